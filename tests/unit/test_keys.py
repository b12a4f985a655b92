"""Tests for API key generation and scope encoding."""

from joinery.auth.keys import (
    DISPLAY_PREFIX_LENGTH,
    KEY_PREFIX,
    format_scopes,
    generate_api_key,
    hash_api_key,
    is_well_formed,
    parse_scopes,
)


class TestGenerateApiKey:
    def test_format(self) -> None:
        full_key, key_hash, key_prefix = generate_api_key()
        assert full_key.startswith(KEY_PREFIX)
        assert len(full_key) == len(KEY_PREFIX) + 43
        assert key_prefix == full_key[:DISPLAY_PREFIX_LENGTH]
        assert key_hash == hash_api_key(full_key)

    def test_unique(self) -> None:
        keys = {generate_api_key()[0] for _ in range(20)}
        assert len(keys) == 20

    def test_generated_key_is_well_formed(self) -> None:
        assert is_well_formed(generate_api_key()[0])


class TestHashApiKey:
    def test_deterministic(self) -> None:
        assert hash_api_key("jsk_abc") == hash_api_key("jsk_abc")

    def test_sha256_hex(self) -> None:
        digest = hash_api_key("jsk_abc")
        assert len(digest) == 64
        int(digest, 16)


class TestIsWellFormed:
    def test_wrong_prefix(self) -> None:
        assert not is_well_formed("sk_" + "a" * 43)

    def test_too_short(self) -> None:
        assert not is_well_formed(KEY_PREFIX + "short")


class TestScopeEncoding:
    def test_parse_drops_blanks(self) -> None:
        assert parse_scopes("read, write,,") == frozenset({"read", "write"})

    def test_parse_empty(self) -> None:
        assert parse_scopes(None) == frozenset()
        assert parse_scopes("") == frozenset()

    def test_format_sorted_and_deduplicated(self) -> None:
        assert format_scopes(["write", "read", "write", " "]) == "read,write"
