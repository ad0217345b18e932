"""Token lifecycle management for calendar provider APIs.

Each provider has one :class:`~meetbell.models.TokenRecord` persisted under
``token::<provider>`` and OAuth client credentials under
``credentials::<provider>``.  :meth:`TokenManager.get_valid_token` returns the
stored access token while it is more than the safety margin away from expiry,
and otherwise refreshes it:

- transient failures (network, 5xx, malformed payloads) are retried under a
  bounded :class:`~meetbell.core.retry.RetryPolicy` (3 attempts, 0.5s
  exponential backoff);
- responses saying the refresh credential is invalid, expired or revoked
  abort immediately, since retrying cannot help;
- on final failure the provider is marked disconnected, a "reconnect
  required" notification is emitted and ``None`` is returned.

Disconnected records never yield a token.  Secret material is redacted from
every logged message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from meetbell.core.logging import redact_credential_values
from meetbell.core.retry import RetryPolicy, Sleep
from meetbell.core.state import StateStore
from meetbell.core.timers import Clock, utc_now
from meetbell.models import TokenRecord

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPES = "openid profile email offline_access User.Read Calendars.ReadWrite"

TOKEN_KEY_PREFIX = "token::"
CREDENTIALS_KEY_PREFIX = "credentials::"

SAFETY_MARGIN = timedelta(minutes=5)
DEFAULT_EXPIRES_IN_SECONDS = 3600
REFRESH_MAX_ATTEMPTS = 3
REFRESH_BASE_DELAY_SECONDS = 0.5

# Error markers meaning the refresh credential itself is unusable.
NON_RETRYABLE_MARKERS = ("invalid_grant", "expired", "revoked")

DisconnectCallback = Callable[[str], Awaitable[None]]


class TokenRefreshError(RuntimeError):
    """Raised when a refresh-token exchange fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CredentialRevokedError(TokenRefreshError):
    """The refresh credential is invalid, expired or revoked; do not retry."""


def is_retryable_refresh_error(exc: BaseException) -> bool:
    if isinstance(exc, CredentialRevokedError):
        return False
    text = str(exc).lower()
    return not any(marker in text for marker in NON_RETRYABLE_MARKERS)


def _is_credential_failure(error_code: str | None, message: str) -> bool:
    text = f"{error_code or ''} {message}".lower()
    return any(marker in text for marker in NON_RETRYABLE_MARKERS)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _error_details(response: httpx.Response) -> tuple[str | None, str]:
    """Return ``(error_code, human message)`` from an OAuth error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        description = payload.get("error_description")
        if isinstance(error, dict):
            message = error.get("message")
            status = error.get("status")
            return (
                status if isinstance(status, str) else None,
                " ".join(str(message or "").split())[:200] or f"HTTP {response.status_code}",
            )
        if isinstance(error, str):
            detail = f"{error}: {description}" if isinstance(description, str) else error
            return error, " ".join(detail.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return None, " ".join(raw_text.split())[:200]
    return None, f"Token refresh failed: {response.status_code}"


def refresh_retry_policy(sleep: Sleep = asyncio.sleep) -> RetryPolicy:
    """Bounded retry used for refresh-token exchanges."""
    return RetryPolicy(
        max_attempts=REFRESH_MAX_ATTEMPTS,
        base_delay=REFRESH_BASE_DELAY_SECONDS,
        is_retryable=is_retryable_refresh_error,
        sleep=sleep,
    )


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a provider's token endpoint."""

    name: str
    label: str
    token_url: str
    scope: str | None = None


GOOGLE = ProviderSpec(name="google", label="Google Calendar", token_url=GOOGLE_TOKEN_URL)
OUTLOOK = ProviderSpec(
    name="outlook",
    label="Outlook Calendar",
    token_url=MICROSOFT_TOKEN_URL,
    scope=MICROSOFT_SCOPES,
)
PROVIDERS: dict[str, ProviderSpec] = {GOOGLE.name: GOOGLE, OUTLOOK.name: OUTLOOK}


class OAuthClientCredentials(BaseModel):
    """OAuth client registration used for refresh-token exchange."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_id: str = Field(min_length=1, alias="clientId")
    client_secret: str | None = Field(default=None, alias="clientSecret")

    @field_validator("client_id")
    @classmethod
    def _normalize_client_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("client_id must be a non-empty string")
        return normalized

    @field_validator("client_secret")
    @classmethod
    def _normalize_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    def __repr__(self) -> str:
        return (
            f"OAuthClientCredentials(client_id={self.client_id!r}, "
            f"client_secret={'<REDACTED>' if self.client_secret else None})"
        )

    __str__ = __repr__


class TokenManager:
    """Keeps one provider's bearer token valid."""

    def __init__(
        self,
        provider: ProviderSpec,
        store: StateStore,
        http_client: httpx.AsyncClient,
        *,
        on_disconnect: DisconnectCallback | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
        safety_margin: timedelta = SAFETY_MARGIN,
    ) -> None:
        self._provider = provider
        self._store = store
        self._http = http_client
        self._on_disconnect = on_disconnect
        self._retry = retry_policy or refresh_retry_policy()
        self._clock = clock
        self._safety_margin = safety_margin

    @property
    def provider(self) -> ProviderSpec:
        return self._provider

    @property
    def _token_key(self) -> str:
        return f"{TOKEN_KEY_PREFIX}{self._provider.name}"

    async def load(self) -> TokenRecord | None:
        raw = await self._store.get(self._token_key)
        if not isinstance(raw, dict):
            return None
        try:
            return TokenRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Stored %s token record is unreadable", self._provider.label)
            return None

    async def _save(self, record: TokenRecord) -> None:
        await self._store.set(self._token_key, record.model_dump(mode="json"))

    async def load_credentials(self) -> OAuthClientCredentials | None:
        raw = await self._store.get(f"{CREDENTIALS_KEY_PREFIX}{self._provider.name}")
        if not isinstance(raw, dict):
            return None
        try:
            return OAuthClientCredentials.model_validate(raw)
        except ValidationError:
            logger.warning("Stored %s OAuth client credentials are invalid", self._provider.label)
            return None

    async def save_credentials(self, client_id: str, client_secret: str | None = None) -> None:
        credentials = OAuthClientCredentials(client_id=client_id, client_secret=client_secret)
        await self._store.set(
            f"{CREDENTIALS_KEY_PREFIX}{self._provider.name}",
            credentials.model_dump(mode="json"),
        )

    async def status(self) -> bool:
        record = await self.load()
        return record is not None and record.connected

    async def connect(
        self,
        access_token: str,
        *,
        refresh_token: str | None = None,
        expires_in: int | None = DEFAULT_EXPIRES_IN_SECONDS,
    ) -> TokenRecord:
        """Persist a freshly issued token handed over by the OAuth collaborator."""
        now = self._clock()
        record = TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=_coerce_expires_in_seconds(expires_in)),
            connected=True,
            connected_at=now,
        )
        await self._save(record)
        logger.info("Connected to %s", self._provider.label)
        return record

    async def disconnect(self, *, notify: bool = False) -> None:
        """Mark the provider disconnected; OAuth client credentials are kept."""
        record = await self.load() or TokenRecord()
        await self._save(record.model_copy(update={"connected": False}))
        logger.info("Disconnected from %s", self._provider.label)
        if notify and self._on_disconnect is not None:
            try:
                await self._on_disconnect(self._provider.label)
            except Exception:
                logger.exception("Failed to send reconnect notification for %s", self._provider.label)

    def _is_fresh(self, record: TokenRecord) -> bool:
        if record.expires_at is None:
            return True
        return record.expires_at - self._safety_margin > self._clock()

    async def get_valid_token(self) -> str | None:
        """Return a usable access token, refreshing it when close to expiry."""
        record = await self.load()
        if record is None or not record.connected or not record.access_token:
            return None

        if self._is_fresh(record):
            return record.access_token

        logger.info("%s token expired or expiring, attempting refresh", self._provider.label)
        if not record.refresh_token:
            logger.warning("No %s refresh token, re-authentication required", self._provider.label)
            await self.disconnect(notify=True)
            return None

        credentials = await self.load_credentials()
        if credentials is None:
            logger.warning("No %s OAuth client credentials found", self._provider.label)
            await self.disconnect(notify=True)
            return None

        refresh_token = record.refresh_token
        try:
            payload = await self._retry.run(
                lambda: self._request_refresh(refresh_token, credentials),
                label=f"{self._provider.label} token refresh",
            )
        except TokenRefreshError as exc:
            logger.error(
                "%s token refresh failed: %s",
                self._provider.label,
                redact_credential_values(str(exc)),
            )
            await self.disconnect(notify=True)
            return None

        access_token = payload["access_token"].strip()
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        new_refresh = payload.get("refresh_token")
        if not isinstance(new_refresh, str) or not new_refresh.strip():
            # Keep the existing refresh token if the provider did not issue a new one.
            new_refresh = record.refresh_token
        updated = record.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": new_refresh,
                "expires_at": self._clock() + timedelta(seconds=expires_in),
                "connected": True,
            }
        )
        await self._save(updated)
        logger.info("%s token refreshed", self._provider.label)
        return access_token

    async def _request_refresh(
        self,
        refresh_token: str,
        credentials: OAuthClientCredentials,
    ) -> dict[str, Any]:
        data = {
            "client_id": credentials.client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if credentials.client_secret:
            data["client_secret"] = credentials.client_secret
        if self._provider.scope:
            data["scope"] = self._provider.scope

        try:
            response = await self._http.post(
                self._provider.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"{self._provider.label} token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code, message = _error_details(response)
            text = f"{self._provider.label} token refresh failed ({response.status_code}): {message}"
            if _is_credential_failure(error_code, message):
                raise CredentialRevokedError(text, status_code=response.status_code)
            raise TokenRefreshError(text, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                f"{self._provider.label} token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                f"{self._provider.label} token response is missing a non-empty access_token"
            )
        return payload

    async def proactive_refresh(self) -> bool | None:
        """Refresh ahead of need so failures surface before a dependent call.

        Returns ``None`` when the provider is not connected, otherwise whether a
        valid token is available afterwards.  Never raises.
        """
        try:
            if not await self.status():
                return None
            token = await self.get_valid_token()
        except Exception:
            logger.exception("Proactive %s token refresh failed", self._provider.label)
            return False
        if token is None:
            logger.warning("%s token refresh returned nothing, reconnection needed", self._provider.label)
            return False
        logger.debug("%s token is valid", self._provider.label)
        return True
