from __future__ import annotations


def cors_kwargs(origins: list[str], allow_credentials: bool) -> dict:
    allow_headers = ["Authorization", "Content-Type", "X-Request-Id", "X-Admin-Token"]
    if allow_credentials:
        # Anonymous identity is keyed on this header
        allow_headers.append("X-Caller-Id")

    return {
        "allow_origins": origins,
        "allow_credentials": allow_credentials,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": allow_headers,
        "expose_headers": ["X-Request-Id", "Retry-After"],
    }
