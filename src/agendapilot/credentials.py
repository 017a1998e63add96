"""Summary: Provider credential encoding and OAuth refresh helpers.

Importance: Keeps per-tenant mailbox and calendar tokens obscured at rest and fresh in use.
Alternatives: Use a dedicated secrets manager or strong encryption library.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from agendapilot.errors import ConfigurationError, TransientProviderError

CODEC_PREFIX = "v1:"


class CredentialCodec:
    """Summary: Keyed obfuscation for stored provider tokens.

    Importance: Avoids raw OAuth tokens in SQLite and detects tampered or
    foreign-secret payloads through a MAC.
    Alternatives: Use a proper encryption library with key management.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigurationError("A token secret is required to store credentials")
        self._secret = secret.encode("utf-8")

    def encode(self, plaintext: str) -> str:
        raw = plaintext.encode("utf-8")
        masked = bytes(b ^ k for b, k in zip(raw, _keystream(self._secret, len(raw))))
        tag = hmac.new(self._secret, masked, hashlib.sha256).digest()[:8]
        return CODEC_PREFIX + base64.urlsafe_b64encode(tag + masked).decode("utf-8")

    def decode(self, payload: str) -> str:
        """Summary: Reverse encode, rejecting payloads made with another secret.

        Importance: A rotated secret surfaces as a configuration error, not garbage tokens.
        Alternatives: Decode blindly and let the provider reject the token.
        """

        if not payload.startswith(CODEC_PREFIX):
            raise ConfigurationError("Stored credential has an unknown encoding")
        try:
            blob = base64.urlsafe_b64decode(payload[len(CODEC_PREFIX) :].encode("utf-8"))
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("Stored credential is corrupt") from exc
        tag, masked = blob[:8], blob[8:]
        expected = hmac.new(self._secret, masked, hashlib.sha256).digest()[:8]
        if not hmac.compare_digest(tag, expected):
            raise ConfigurationError("Stored credential was encoded with a different secret")
        raw = bytes(b ^ k for b, k in zip(masked, _keystream(self._secret, len(masked))))
        return raw.decode("utf-8")


def _keystream(secret: bytes, length: int) -> bytes:
    output = b""
    counter = 0
    while len(output) < length:
        output += hashlib.sha256(secret + counter.to_bytes(4, "big")).digest()
        counter += 1
    return output[:length]


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data."""

    access_token: str
    refresh_token: str | None
    expires_at: str | None

    @staticmethod
    def from_response(payload: dict[str, Any]) -> "OAuthTokenResult":
        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, int):
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=expires_in)).isoformat()
        return OAuthTokenResult(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )


def refresh_google_token(
    token_url: str,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    timeout: float,
) -> OAuthTokenResult:
    """Summary: Exchange a refresh token for a new access token.

    Importance: Keeps scheduled sweeps running without manual re-authentication.
    Alternatives: Require the tenant to reconnect whenever a token expires.
    """

    if not client_id or not client_secret:
        raise ConfigurationError("Missing OAuth client credentials for google")
    data = urllib.parse.urlencode(
        {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
    ).encode("utf-8")
    request = urllib.request.Request(
        token_url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        if exc.code == 429 or exc.code >= 500:
            raise TransientProviderError("oauth", error_body or str(exc.reason), exc.code) from exc
        raise ConfigurationError(f"Token refresh failed: {error_body or exc.reason}") from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise TransientProviderError("oauth", f"token refresh failed: {exc}") from exc
    return OAuthTokenResult.from_response(json.loads(raw))


def expires_soon(expires_at: str | None, now: datetime, margin_seconds: int = 60) -> bool:
    """Summary: Check if a token is expired or about to expire."""

    if not expires_at:
        return False
    try:
        expires = datetime.fromisoformat(expires_at)
    except ValueError:
        return False
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires <= now + timedelta(seconds=margin_seconds)
