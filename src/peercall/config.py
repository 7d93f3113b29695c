"""Startup configuration.

``validate_config`` runs before the device surface accepts connections so
a missing Supabase key fails loudly at boot rather than on the first call.
``CallSettings.from_env`` gathers everything else with working defaults.
"""

import os
import sys
import logging
from dataclasses import dataclass, field

from peercall.peer import DEFAULT_STUN_URLS

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
]

OPTIONAL_VARS = [
    "SUPABASE_ACCESS_TOKEN",
    "CALL_USER_ID",
    "CALL_AUDIO_DEVICE",
    "CALL_VIDEO_DEVICE",
    "LOG_LEVEL",
]

TRUTHY = {"1", "true", "yes", "on"}


def validate_config() -> None:
    """Exit with a clear error if a required variable is missing or empty."""
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env or the terminal's environment.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


@dataclass
class CallSettings:
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_access_token: str = ""
    user_id: str = ""

    # Kiosk terminals answer by themselves
    unattended: bool = False

    audio_device: str = ""
    audio_format: str = ""
    video_device: str = ""
    video_format: str = ""
    stun_urls: list = field(default_factory=lambda: list(DEFAULT_STUN_URLS))

    auto_accept_delay_s: float = 0.3
    ended_reset_delay_s: float = 2.0
    signal_timeout_s: float = 8.0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "CallSettings":
        stun = [u.strip() for u in os.getenv("CALL_STUN_URLS", "").split(",") if u.strip()]
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
            supabase_access_token=os.getenv("SUPABASE_ACCESS_TOKEN", ""),
            user_id=os.getenv("CALL_USER_ID", ""),
            unattended=os.getenv("CALL_UNATTENDED", "").strip().lower() in TRUTHY,
            audio_device=os.getenv("CALL_AUDIO_DEVICE", ""),
            audio_format=os.getenv("CALL_AUDIO_FORMAT", ""),
            video_device=os.getenv("CALL_VIDEO_DEVICE", ""),
            video_format=os.getenv("CALL_VIDEO_FORMAT", ""),
            stun_urls=stun or list(DEFAULT_STUN_URLS),
            auto_accept_delay_s=_float_env("CALL_AUTO_ACCEPT_DELAY_S", 0.3),
            ended_reset_delay_s=_float_env("CALL_ENDED_RESET_DELAY_S", 2.0),
            signal_timeout_s=_float_env("CALL_SIGNAL_TIMEOUT_S", 8.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
