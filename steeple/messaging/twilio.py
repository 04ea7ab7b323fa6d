"""SMS delivery through the Twilio REST API."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from steeple.config import DEFAULT_HTTP_TIMEOUT, Settings
from steeple.errors import DispatchError
from steeple.messaging.base import DispatcherRegistry, HttpDispatcher
from steeple.models import Channel

logger = logging.getLogger(__name__)

API_BASE = "https://api.twilio.com/2010-04-01"


@DispatcherRegistry.register
class TwilioDispatcher(HttpDispatcher):
    name = "twilio"
    channels = (Channel.SMS,)

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.account_sid = account_sid
        self._auth = (account_sid, auth_token)
        self.from_number = from_number

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional[TwilioDispatcher]:
        if not settings.has_twilio:
            return None
        return cls(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_from_number,
            timeout=settings.http_timeout,
        )

    def _send_impl(self, address: str, message: str, subject: Optional[str]) -> str:
        url = f"{API_BASE}/Accounts/{self.account_sid}/Messages.json"
        resp = self._client.post(
            url,
            data={"To": address, "From": self.from_number, "Body": message},
            auth=self._auth,
        )
        body = self._check(resp)
        sid = body.get("sid")
        if not sid:
            raise DispatchError("twilio: response carried no message sid")
        logger.debug("twilio: queued %s to %s", sid, address)
        return sid
