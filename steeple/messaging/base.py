"""Base dispatcher class and provider registry."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Optional

import httpx

from steeple.config import DEFAULT_HTTP_TIMEOUT, Settings
from steeple.errors import DispatchError
from steeple.models import Channel

logger = logging.getLogger(__name__)


class DispatcherRegistry:
    """Central registry of all available message providers."""

    _dispatchers: ClassVar[dict[str, type[BaseDispatcher]]] = {}

    @classmethod
    def register(cls, dispatcher_cls: type[BaseDispatcher]) -> type[BaseDispatcher]:
        """Register a dispatcher class. Used as a decorator."""
        name = dispatcher_cls.name
        if not name:
            raise ValueError(f"{dispatcher_cls.__name__} must define a 'name' attribute.")
        cls._dispatchers[name] = dispatcher_cls
        logger.debug("Registered dispatcher: %s", name)
        return dispatcher_cls

    @classmethod
    def get(cls, name: str) -> type[BaseDispatcher] | None:
        return cls._dispatchers.get(name)

    @classmethod
    def all(cls) -> dict[str, type[BaseDispatcher]]:
        return dict(cls._dispatchers)


class BaseDispatcher(ABC):
    """Sends one message to one address over a single provider.

    ``send()`` returns the provider's message id and raises
    ``DispatchError`` for any provider, network or timeout failure, so
    callers only ever handle one exception type per recipient.
    """

    name: ClassVar[str] = ""
    channels: ClassVar[tuple[Channel, ...]] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional[BaseDispatcher]:
        """Build a live instance, or None when credentials are missing."""
        return None

    def send(self, address: str, message: str, subject: Optional[str] = None) -> str:
        if not address:
            raise DispatchError(f"{self.name}: no address")
        try:
            return self._send_impl(address, message, subject)
        except httpx.TimeoutException as exc:
            raise DispatchError(f"{self.name}: timed out sending to {address}") from exc
        except httpx.HTTPError as exc:
            raise DispatchError(f"{self.name}: {exc}") from exc

    @abstractmethod
    def _send_impl(self, address: str, message: str, subject: Optional[str]) -> str:
        """Subclass hook: deliver the message and return the provider id."""
        ...

    def close(self) -> None:
        """Release provider resources."""

    def __enter__(self) -> BaseDispatcher:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class HttpDispatcher(BaseDispatcher):
    """Dispatcher backed by an ``httpx.Client`` for a provider's REST API."""

    def __init__(self, timeout: float = DEFAULT_HTTP_TIMEOUT, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def _check(self, resp: httpx.Response) -> dict:
        """Return the JSON body, raising DispatchError on 4xx/5xx."""
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            detail = body.get("message") if isinstance(body, dict) else None
            logger.warning("%s: HTTP %d (%s)", self.name, resp.status_code, detail or resp.text[:200])
            raise DispatchError(f"{self.name}: HTTP {resp.status_code}: {detail or 'request failed'}")
        return body if isinstance(body, dict) else {}

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()
