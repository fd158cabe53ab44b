"""Signed session cookie handling.

The cookie carries ``<token>.<signature>`` where the signature is an
HMAC-SHA256 of the token under ``AUTH_SECRET``. During secret rotation a
signature made with ``AUTH_PREVIOUS_SECRET`` is still accepted.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Iterable, Optional

from fastapi import Request, Response

from sumpauth.config import Settings


def _signature(value: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), value.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def sign(value: str, secret: str) -> str:
    return f"{value}.{_signature(value, secret)}"


def unsign(signed: Optional[str], secrets: Iterable[Optional[str]]) -> Optional[str]:
    """Return the unsigned value if any secret produced the signature."""
    if not signed or "." not in signed:
        return None
    value, _, signature = signed.rpartition(".")
    if not value:
        return None
    for secret in secrets:
        if secret and hmac.compare_digest(_signature(value, secret), signature):
            return value
    return None


def _verification_secrets(settings: Settings) -> list[Optional[str]]:
    return [settings.auth_secret, settings.auth_previous_secret]


def read_session_token(request: Request, settings: Settings) -> Optional[str]:
    raw = request.cookies.get(settings.session_cookie_name)
    return unsign(raw, _verification_secrets(settings))


def set_session_cookie(
    response: Response, token: str, settings: Settings, *, max_age: Optional[int] = None
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        sign(token, settings.auth_secret or ""),
        max_age=max_age or settings.session_absolute_timeout_seconds,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite.value,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite.value,
    )
