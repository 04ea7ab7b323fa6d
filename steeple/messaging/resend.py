"""Email delivery through the Resend API."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from steeple.config import DEFAULT_HTTP_TIMEOUT, Settings
from steeple.errors import DispatchError
from steeple.messaging.base import DispatcherRegistry, HttpDispatcher
from steeple.models import Channel
from steeple.templating import to_plain_text

logger = logging.getLogger(__name__)

API_URL = "https://api.resend.com/emails"
DEFAULT_SUBJECT = "Event reminder"


@DispatcherRegistry.register
class ResendDispatcher(HttpDispatcher):
    name = "resend"
    channels = (Channel.EMAIL,)

    def __init__(
        self,
        api_key: str,
        sender: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self.sender = sender

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional[ResendDispatcher]:
        if not settings.has_resend:
            return None
        return cls(settings.resend_api_key, settings.resend_from, timeout=settings.http_timeout)

    def _send_impl(self, address: str, message: str, subject: Optional[str]) -> str:
        payload = {
            "from": self.sender,
            "to": [address],
            "subject": subject or DEFAULT_SUBJECT,
            "text": to_plain_text(message),
        }
        if "<" in message:
            payload["html"] = message
        resp = self._client.post(API_URL, json=payload, headers=self._headers)
        body = self._check(resp)
        email_id = body.get("id")
        if not email_id:
            raise DispatchError("resend: response carried no email id")
        logger.debug("resend: accepted %s for %s", email_id, address)
        return email_id
