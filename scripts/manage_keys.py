"""Operator CLI for users, API keys and token revocation.

Usage::

    python -m scripts.manage_keys <command> [options]

Commands:
    create-user       Create a local user
    create-key        Generate an API key for a user
    list-keys         List API keys for a user
    revoke-key        Revoke an API key by prefix
    blacklist-token   Revoke an access or refresh token immediately
    issue-token       Issue a short-lived access token for a user
"""

from __future__ import annotations

import argparse
import sys
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import NoReturn

from sqlalchemy import create_engine, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from joinery.auth.keys import format_scopes, generate_api_key
from joinery.auth.tokens import hash_token, issue_access_token, read_claims
from joinery.config import settings
from joinery.errors import InvalidTokenError
from joinery.storage.orm import ApiKey, BlacklistedToken, User


def get_sync_session() -> Session:
    """Create sync session for CLI operations.

    Uses the same database URL as the async app (psycopg v3
    handles both sync and async natively).
    """
    engine = create_engine(settings.database_url)
    return Session(engine)


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(1)


def _find_user(session: Session, username: str) -> User:
    user = session.execute(
        select(User).where(User.username == username)
    ).scalar_one_or_none()
    if user is None:
        _fail(f"User not found: {username}")
    return user


def create_user(args: argparse.Namespace) -> None:
    with get_sync_session() as session:
        existing = session.execute(
            select(User).where(User.username == args.username)
        ).scalar_one_or_none()
        if existing is not None:
            _fail(f"User already exists: {args.username}")

        user = User(
            username=args.username,
            email=args.email,
            full_name=args.full_name,
            auth_provider="local",
            is_active=True,
            token_version=1,
        )
        session.add(user)
        session.commit()
        print(f"User created: {args.username} (id: {user.id})")


def create_key(args: argparse.Namespace) -> None:
    """Generate an API key for a user."""
    with get_sync_session() as session:
        user = _find_user(session, args.username)

        scopes = format_scopes(args.scopes.split(",")) or "read"
        full_key, key_hash, key_prefix = generate_api_key()
        expires_at = (
            datetime.now(UTC) + timedelta(days=args.expires_days)
            if args.expires_days
            else None
        )

        api_key = ApiKey(
            user_id=user.id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            name=args.name,
            description=args.description,
            scopes=scopes,
            expires_at=expires_at,
            is_active=True,
            is_revoked=False,
        )
        session.add(api_key)
        session.commit()

        print(f'API key created for "{args.username}":')
        print(f"   Key:     {full_key}")
        print(f"   Prefix:  {key_prefix}")
        print(f"   Scopes:  {scopes}")
        print(f"   Name:    {args.name}")
        if expires_at:
            print(f"   Expires: {expires_at.isoformat(timespec='seconds')}")
        print()
        print("Save this key now -- it cannot be retrieved later!")


def list_keys(args: argparse.Namespace) -> None:
    with get_sync_session() as session:
        user = _find_user(session, args.username)

        keys = (
            session.execute(
                select(ApiKey)
                .where(ApiKey.user_id == user.id)
                .order_by(ApiKey.created_at)
            )
            .scalars()
            .all()
        )

        if not keys:
            print(f'No keys for "{args.username}".')
            return

        now = datetime.now(UTC)
        print(f'Keys for "{args.username}":')
        for i, key in enumerate(keys, 1):
            if key.is_revoked:
                status = "revoked"
            elif key.is_expired(now):
                status = "expired"
            else:
                status = "active" if key.is_active else "inactive"
            print(f"  {i}. {key.key_prefix} [{key.name}] scopes={key.scopes} {status}")


def revoke_key(args: argparse.Namespace) -> None:
    """Revoke an API key by its prefix."""
    with get_sync_session() as session:
        key = session.execute(
            select(ApiKey).where(ApiKey.key_prefix == args.prefix)
        ).scalar_one_or_none()
        if key is None:
            _fail(f"Key not found: {args.prefix}")

        if key.is_revoked:
            _fail(f"Key already revoked: {args.prefix}")

        key.is_revoked = True
        key.revoked_at = datetime.now(UTC)
        key.revoked_reason = args.reason
        session.commit()
        print(f"Key revoked: {args.prefix}")


def blacklist_token(args: argparse.Namespace) -> None:
    """Blacklist a token until its natural expiry.

    Access token expiry is read from the token; refresh tokens are opaque
    and are kept for the configured refresh lifetime.
    """
    user_id: uuid.UUID | None = None
    if args.kind == "access":
        try:
            claims = read_claims(args.token)
        except InvalidTokenError as e:
            _fail(f"Cannot blacklist token: {e}")
        expires_at = claims.expires_at
        try:
            user_id = uuid.UUID(claims.subject_id)
        except ValueError:
            user_id = None
    else:
        expires_at = datetime.now(UTC) + timedelta(days=settings.jwt_refresh_token_days)

    stmt = (
        insert(BlacklistedToken)
        .values(
            token_hash=hash_token(args.token),
            token_type=args.kind,
            user_id=user_id,
            expires_at=expires_at,
            reason=args.reason,
        )
        .on_conflict_do_nothing(index_elements=["token_hash"])
    )
    with get_sync_session() as session:
        session.execute(stmt)
        session.commit()
    print(f"Token blacklisted until {expires_at.isoformat(timespec='seconds')}")


def issue_token(args: argparse.Namespace) -> None:
    with get_sync_session() as session:
        user = _find_user(session, args.username)
        if not user.is_active:
            _fail(f"User is inactive: {args.username}")

        token = issue_access_token(
            user_id=user.id,
            username=user.username,
            email=user.email,
            secret=settings.jwt_secret_key.get_secret_value(),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            lifetime=timedelta(minutes=args.minutes),
            auth_provider=user.auth_provider,
        )
    print(token)


def main() -> None:
    """Parse arguments and dispatch to command handler."""
    parser = argparse.ArgumentParser(description="Credential management CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-user", help="Create a local user")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--full-name", default=None)

    p = sub.add_parser("create-key", help="Generate API key for a user")
    p.add_argument("--username", required=True)
    p.add_argument("--name", default="default", help="Key name")
    p.add_argument("--scopes", default="read", help="Comma-separated: read,write,admin")
    p.add_argument("--description", default=None)
    p.add_argument("--expires-days", type=int, default=None)

    p = sub.add_parser("list-keys", help="List API keys for a user")
    p.add_argument("--username", required=True)

    p = sub.add_parser("revoke-key", help="Revoke an API key")
    p.add_argument("--prefix", required=True, help="Key prefix to revoke")
    p.add_argument("--reason", default="Revoked by operator")

    p = sub.add_parser("blacklist-token", help="Revoke a token immediately")
    p.add_argument("--token", required=True)
    p.add_argument("--kind", choices=["access", "refresh"], default="access")
    p.add_argument("--reason", default="Revoked by operator")

    p = sub.add_parser("issue-token", help="Issue an access token for a user")
    p.add_argument("--username", required=True)
    p.add_argument(
        "--minutes", type=int, default=settings.jwt_access_token_minutes
    )

    args = parser.parse_args()
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "create-user": create_user,
        "create-key": create_key,
        "list-keys": list_keys,
        "revoke-key": revoke_key,
        "blacklist-token": blacklist_token,
        "issue-token": issue_token,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
