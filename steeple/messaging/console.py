"""Dry-run dispatcher that logs messages instead of sending them."""

from __future__ import annotations

import itertools
import logging
from typing import Optional

from steeple.messaging.base import BaseDispatcher, DispatcherRegistry
from steeple.models import Channel

logger = logging.getLogger(__name__)


@DispatcherRegistry.register
class ConsoleDispatcher(BaseDispatcher):
    name = "console"
    channels = (Channel.SMS, Channel.EMAIL)

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.sent: list[tuple[str, str]] = []

    def _send_impl(self, address: str, message: str, subject: Optional[str]) -> str:
        self.sent.append((address, message))
        logger.info("[dry-run] to %s: %s", address, message)
        return f"console-{next(self._counter)}"
