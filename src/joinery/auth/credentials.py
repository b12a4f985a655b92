"""Credential extraction from inbound requests."""

from __future__ import annotations

from starlette.requests import Request

API_KEY_SCHEME = "ApiKey "
BEARER_SCHEME = "Bearer "
API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY_PARAM = "api_key"
SESSION_HEADER = "X-Session-Id"
SESSION_COOKIE = "SessionId"
UNKNOWN_IP = "unknown"


def _scheme_value(request: Request, scheme: str) -> str | None:
    header = request.headers.get("Authorization")
    if header and header.startswith(scheme):
        return header[len(scheme) :].strip() or None
    return None


def extract_api_key(request: Request) -> str | None:
    """``Authorization: ApiKey``, then ``X-API-Key``, then ``?api_key=``."""
    value = _scheme_value(request, API_KEY_SCHEME)
    if value:
        return value

    header = request.headers.get(API_KEY_HEADER, "").strip()
    if header:
        return header

    query = request.query_params.get(API_KEY_QUERY_PARAM, "").strip()
    return query or None


def extract_bearer_token(request: Request) -> str | None:
    return _scheme_value(request, BEARER_SCHEME)


def extract_session_id(
    request: Request, claimed_session_id: str | None = None
) -> str | None:
    """``X-Session-Id`` header, then ``SessionId`` cookie, then the token claim."""
    header = request.headers.get(SESSION_HEADER, "").strip()
    if header:
        return header

    cookie = request.cookies.get(SESSION_COOKIE, "").strip()
    if cookie:
        return cookie

    return claimed_session_id or None


def client_ip(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the peer address."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IP


def user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "")
