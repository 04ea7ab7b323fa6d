"""Runtime settings for the reminder engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta, tzinfo
from pathlib import Path
from typing import Optional

from dateutil import tz

from steeple.errors import ConfigurationError

# Maximum number of days into the future to materialize occurrences for.
LOOKAHEAD_DAYS = 90

# A repeated attempt for the same dispatch identity inside this window is a duplicate.
DEDUP_WINDOW = timedelta(hours=2)

DEFAULT_TIMEZONE = "UTC"
DEFAULT_HTTP_TIMEOUT = 20.0
DEFAULT_DATA_DIR = Path("data")


def resolve_timezone(name: str) -> tzinfo:
    """Look up an IANA zone name, failing fast on typos."""
    zone = tz.gettz(name)
    if zone is None:
        raise ConfigurationError(f"Unknown timezone: {name!r}")
    return zone


@dataclass(frozen=True)
class Settings:
    """Organization-wide settings.

    ``timezone`` is the single zone every reminder is rendered in.
    Provider credentials are optional; a channel without credentials
    simply has no live dispatcher.
    """

    timezone: str = DEFAULT_TIMEZONE
    dedup_window: timedelta = DEDUP_WINDOW
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    lookahead_days: int = LOOKAHEAD_DAYS
    data_dir: Path = DEFAULT_DATA_DIR
    organization_id: Optional[str] = None

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = field(default=None, repr=False)
    twilio_from_number: Optional[str] = None

    resend_api_key: Optional[str] = field(default=None, repr=False)
    resend_from: Optional[str] = None

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        resolve_timezone(self.timezone)
        if self.dedup_window <= timedelta(0):
            raise ConfigurationError("dedup_window must be positive")
        if self.http_timeout <= 0:
            raise ConfigurationError("http_timeout must be positive")
        if self.lookahead_days < 1:
            raise ConfigurationError("lookahead_days must be at least 1")

    @property
    def tz(self) -> tzinfo:
        return resolve_timezone(self.timezone)

    @property
    def late_grace(self) -> timedelta:
        """How long after its fire time a reminder still counts as on time."""
        return self.dedup_window

    @property
    def has_twilio(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def has_resend(self) -> bool:
        return bool(self.resend_api_key and self.resend_from)

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def with_overrides(self, **changes) -> Settings:
        """Return a copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> Settings:
        """Build settings from ``STEEPLE_*`` and provider environment variables."""
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            value = env.get(name)
            return value.strip() if value and value.strip() else None

        kwargs: dict = {}
        if _get("STEEPLE_TIMEZONE"):
            kwargs["timezone"] = _get("STEEPLE_TIMEZONE")
        if _get("STEEPLE_DATA_DIR"):
            kwargs["data_dir"] = Path(_get("STEEPLE_DATA_DIR"))
        try:
            if _get("STEEPLE_DEDUP_MINUTES"):
                kwargs["dedup_window"] = timedelta(minutes=int(_get("STEEPLE_DEDUP_MINUTES")))
            if _get("STEEPLE_HTTP_TIMEOUT"):
                kwargs["http_timeout"] = float(_get("STEEPLE_HTTP_TIMEOUT"))
            if _get("STEEPLE_LOOKAHEAD_DAYS"):
                kwargs["lookahead_days"] = int(_get("STEEPLE_LOOKAHEAD_DAYS"))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc

        return cls(
            organization_id=_get("STEEPLE_ORGANIZATION_ID"),
            twilio_account_sid=_get("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=_get("TWILIO_AUTH_TOKEN"),
            twilio_from_number=_get("TWILIO_PHONE_NUMBER"),
            resend_api_key=_get("RESEND_API_KEY"),
            resend_from=_get("RESEND_FROM"),
            supabase_url=_get("SUPABASE_URL"),
            supabase_key=_get("SUPABASE_SERVICE_ROLE_KEY"),
            **kwargs,
        )
