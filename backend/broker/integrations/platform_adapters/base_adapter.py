from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

import httpx

from broker.core.config import settings


class AdapterResolutionError(RuntimeError):
    pass


class AdapterError(RuntimeError):
    retryable: bool = True
    error_code: str = "adapter_error"


class AdapterRetryableError(AdapterError):
    retryable = True
    error_code = "adapter_retryable_error"


class AdapterPermanentError(AdapterError):
    retryable = False
    error_code = "adapter_permanent_error"


class AdapterAuthError(AdapterPermanentError):
    error_code = "adapter_auth_error"


@dataclass
class ConnectedIdentity:
    external_account_id: str
    username: str | None
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    verified: bool = False
    follower_count: int | None = None


class BasePlatformAdapter(ABC):
    platform: ClassVar[str] = ""
    display_name: ClassVar[str] = ""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    @abstractmethod
    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: str) -> ConnectedIdentity:
        raise NotImplementedError

    @abstractmethod
    async def revoke(self, *, access_token: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def publish_text(self, *, access_token: str, content: str, options: dict | None = None) -> dict:
        raise NotImplementedError

    def validate_content(self, content: str, options: dict | None = None) -> None:
        """Raise ``AdapterPermanentError`` for content the platform would refuse."""

    @property
    def label(self) -> str:
        return self.display_name or self.platform

    async def _send(self, method: str, url: str, *, operation: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=settings.adapter_timeout_seconds, transport=self._transport
            ) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise AdapterRetryableError(f"{self.label} {operation} transport failure: {exc}") from exc

    def _raise_for_status(self, response: httpx.Response, *, operation: str) -> None:
        if response.status_code == 401:
            raise AdapterAuthError(f"{self.label} {operation} unauthorized")
        if response.status_code == 403:
            raise AdapterAuthError(f"{self.label} {operation} forbidden")
        if response.status_code == 429 or response.status_code >= 500:
            raise AdapterRetryableError(f"{self.label} {operation} temporary failure: {response.status_code}")
        if response.status_code >= 400:
            raise AdapterPermanentError(f"{self.label} {operation} failed: {response.status_code}")
