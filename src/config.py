import os
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

# .env from the working directory (where the service is started)
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


@dataclass
class Config:
    api_host: str
    api_port: int
    admin_api_key: str  # Guards /api/v1/admin/*
    # Telegram bot used only as a push channel for moderation notifications
    bot_token: str
    admin_ids: list[int]  # Chat ids notified about new submissions
    notifications_enabled: bool
    # Sponsored placements defaults (used until settings are saved)
    sponsored_max_slots: int
    sponsored_enable_rotation: bool
    sponsored_rotation_interval_hours: int


def _clean(value: str | None) -> str:
    # systemd EnvironmentFile keeps quotes around values
    return (value or "").strip().strip('"').strip("'")


def parse_admin_ids(env_value: str) -> list[int]:
    """Parse admin chat ids separated by commas or spaces."""
    if not env_value:
        return []
    env_value = _clean(env_value)
    ids = [part.strip() for part in env_value.replace(",", " ").split()]
    return [int(part) for part in ids if part.lstrip("-").isdigit()]


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    value = _clean(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int | None = None) -> int | None:
    if value is None:
        return default
    value = _clean(value)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


CFG = Config(
    api_host=_clean(os.getenv("API_HOST")) or "0.0.0.0",
    api_port=parse_int(os.getenv("API_PORT"), 8080),
    admin_api_key=_clean(os.getenv("ADMIN_API_KEY")),
    bot_token=_clean(os.getenv("BOT_TOKEN")),
    admin_ids=parse_admin_ids(os.getenv("ADMIN_IDS", "")),
    notifications_enabled=parse_bool(os.getenv("NOTIFICATIONS_ENABLED"), True),
    sponsored_max_slots=max(1, parse_int(os.getenv("SPONSORED_MAX_SLOTS"), 3)),
    sponsored_enable_rotation=parse_bool(os.getenv("SPONSORED_ENABLE_ROTATION"), True),
    sponsored_rotation_interval_hours=max(1, parse_int(os.getenv("SPONSORED_ROTATION_INTERVAL_HOURS"), 24)),
)

# DB path: from env or relative to the working directory
DB_PATH = _clean(os.getenv("DB_PATH")) or str(Path.cwd() / "marketplace.db")


def is_notifications_enabled() -> bool:
    """Push notifications need both the flag and a bot token."""
    return CFG.notifications_enabled and bool(CFG.bot_token)
