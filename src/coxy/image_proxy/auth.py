"""Outbound request authentication and persisted access tokens.

Only request signing lives here. Obtaining the access token (the OAuth
redirect handshake) happens elsewhere; the token is handed to
:class:`CredentialStore` once and then reused for every origin request.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generator, Optional
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from ..common.settings import AuthMode, ConfigurationError, ProxySettings

LOGGER = structlog.get_logger("coxy.auth")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AccessToken(BaseModel):
    """A pre-negotiated OAuth 1.0a access token."""

    token: str
    token_secret: str
    obtained_at: datetime = Field(default_factory=_utc_now)


class CredentialStore:
    """JSON file holding one access token, written atomically with 0600 permissions."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[AccessToken]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return AccessToken.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            LOGGER.warning("credential_store_corrupt", path=str(self.path), error=str(exc))
            return None

    def save(self, token: AccessToken) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = token.model_dump_json(indent=2)
        fd, temp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(temp_name, 0o600)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def delete(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


def _percent_encode(value: str) -> str:
    return quote(value, safe="~")


class OAuth1Signer(httpx.Auth):
    """Signs requests with OAuth 1.0a HMAC-SHA1 using a stored access token."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        access_token: AccessToken,
        *,
        clock: Callable[[], float] = time.time,
        nonce_factory: Callable[[], str] = lambda: secrets.token_hex(16),
    ) -> None:
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._access_token = access_token
        self._clock = clock
        self._nonce_factory = nonce_factory

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        yield self.sign_request(request)

    def sign_request(self, request: httpx.Request) -> httpx.Request:
        oauth_params = {
            "oauth_consumer_key": self._consumer_key,
            "oauth_nonce": self._nonce_factory(),
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": str(int(self._clock())),
            "oauth_token": self._access_token.token,
            "oauth_version": "1.0",
        }
        oauth_params["oauth_signature"] = self.signature(request, oauth_params)
        header = ", ".join(
            f'{_percent_encode(key)}="{_percent_encode(value)}"' for key, value in sorted(oauth_params.items())
        )
        request.headers["Authorization"] = f"OAuth {header}"
        return request

    def signature(self, request: httpx.Request, oauth_params: dict[str, str]) -> str:
        base_string = signature_base_string(request, oauth_params)
        key = f"{_percent_encode(self._consumer_secret)}&{_percent_encode(self._access_token.token_secret)}"
        digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
        return base64.b64encode(digest).decode("ascii")


def signature_base_string(request: httpx.Request, oauth_params: dict[str, str]) -> str:
    url = request.url
    port = f":{url.port}" if url.port is not None else ""
    raw_path = url.raw_path.split(b"?", 1)[0].decode("ascii")
    base_uri = f"{url.scheme.lower()}://{url.host.lower()}{port}{raw_path}"
    pairs = [(_percent_encode(k), _percent_encode(v)) for k, v in url.params.multi_items()]
    pairs.extend((_percent_encode(k), _percent_encode(v)) for k, v in oauth_params.items())
    normalized = "&".join(f"{k}={v}" for k, v in sorted(pairs))
    return "&".join(
        [request.method.upper(), _percent_encode(base_uri), _percent_encode(normalized)]
    )


def build_authenticator(settings: ProxySettings, store: Optional[CredentialStore] = None) -> Optional[httpx.Auth]:
    """Select the outbound authenticator; misconfiguration fails startup."""
    if settings.auth_mode is AuthMode.NONE:
        return None
    if not settings.oauth_consumer_key or settings.oauth_consumer_secret is None:
        raise ConfigurationError("COXY_OAUTH_CONSUMER_KEY and COXY_OAUTH_CONSUMER_SECRET are required for oauth1")
    store = store or CredentialStore(settings.credentials_path)
    access_token = store.load()
    if access_token is None:
        raise ConfigurationError(f"No access token stored at {store.path}; run coxy-credentials save first")
    LOGGER.info("oauth1_signer_configured", credentials_path=str(store.path))
    return OAuth1Signer(
        settings.oauth_consumer_key,
        settings.oauth_consumer_secret.get_secret_value(),
        access_token,
    )
