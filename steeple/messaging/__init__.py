"""Message providers, one module per service."""

from __future__ import annotations

import logging

from steeple.config import Settings
from steeple.messaging.base import BaseDispatcher, DispatcherRegistry, HttpDispatcher
from steeple.messaging.console import ConsoleDispatcher
from steeple.messaging.resend import ResendDispatcher
from steeple.messaging.twilio import TwilioDispatcher
from steeple.models import Channel

logger = logging.getLogger(__name__)

__all__ = [
    "BaseDispatcher",
    "ConsoleDispatcher",
    "DispatcherRegistry",
    "HttpDispatcher",
    "ResendDispatcher",
    "TwilioDispatcher",
    "build_dispatchers",
]


def build_dispatchers(settings: Settings, dry_run: bool = False) -> dict[Channel, BaseDispatcher]:
    """Pick one dispatcher per channel from the configured providers.

    With ``dry_run`` every channel goes to the console dispatcher.
    Channels without credentials are left out.
    """
    if dry_run:
        console = ConsoleDispatcher()
        return {channel: console for channel in Channel}

    dispatchers: dict[Channel, BaseDispatcher] = {}
    for name, dispatcher_cls in DispatcherRegistry.all().items():
        instance = dispatcher_cls.from_settings(settings)
        if instance is None:
            continue
        for channel in dispatcher_cls.channels:
            dispatchers.setdefault(channel, instance)
        logger.debug("Using %s for %s", name, ", ".join(c.value for c in dispatcher_cls.channels))
    return dispatchers
