"""Caller identity resolution.

Authentication lives outside the gateway. This module only turns an incoming
request into a ``CallerIdentity``: from a bearer JWT when ``identity_mode`` is
``bearer``, otherwise from the ``X-Caller-Id`` header or the client address.
"""
from __future__ import annotations

from dataclasses import dataclass

import jwt
from fastapi import HTTPException, Request
from jwt import ExpiredSignatureError, InvalidTokenError

from aigateway.app.config.settings import settings


@dataclass(frozen=True)
class CallerIdentity:
    caller_id: str
    client_key: str
    is_admin: bool = False


def client_address(request: Request) -> str:
    peer = request.client.host if request.client else "unknown"
    # Trust forwarded headers only when the peer is a configured proxy
    if peer not in settings.trusted_proxies_list:
        return peer
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or peer
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip() or peer
    return peer


def _get_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not isinstance(authorization, str):
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        token = parts[1].strip()
        return token or None
    return None


def decode_access_token(token: str) -> dict:
    """Decode and validate a JWT access token."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except ExpiredSignatureError as exc:
        raise ValueError("TOKEN_EXPIRED") from exc
    except InvalidTokenError as exc:
        raise ValueError("TOKEN_INVALID") from exc


def _is_admin(request: Request) -> bool:
    token = request.headers.get("X-Admin-Token")
    return bool(settings.admin_token) and token == settings.admin_token


class IdentityResolver:
    def resolve(self, request: Request) -> CallerIdentity:
        address = client_address(request)
        if settings.identity_mode == "bearer":
            token = _get_bearer_token(request.headers.get("Authorization"))
            if not token:
                raise HTTPException(
                    status_code=401, detail={"code": "AUTH_REQUIRED", "message": "Authentication required"}
                )
            try:
                payload = decode_access_token(token)
            except ValueError as exc:
                code = "AUTH_EXPIRED" if str(exc) == "TOKEN_EXPIRED" else "AUTH_INVALID"
                raise HTTPException(
                    status_code=401, detail={"code": code, "message": "Invalid or expired token"}
                ) from exc
            subject = payload.get("sub")
            if not subject:
                raise HTTPException(
                    status_code=401, detail={"code": "AUTH_INVALID", "message": "Invalid token payload"}
                )
            return CallerIdentity(
                caller_id=str(subject),
                client_key=f"caller:{subject}",
                is_admin=payload.get("role") == "admin" or _is_admin(request),
            )

        caller_id = (request.headers.get("X-Caller-Id") or "").strip() or address
        return CallerIdentity(caller_id=caller_id, client_key=address, is_admin=_is_admin(request))


identity_resolver = IdentityResolver()


def get_caller(request: Request) -> CallerIdentity:
    """FastAPI dependency resolving the calling identity."""
    return identity_resolver.resolve(request)


def require_admin(request: Request) -> CallerIdentity:
    caller = identity_resolver.resolve(request)
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail={"code": "FORBIDDEN", "message": "Admin access required"})
    return caller
