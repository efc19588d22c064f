import copy
import os
from dataclasses import dataclass, field
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .scheduler import validate_cron

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_TIMEZONE = "Australia/Melbourne"
DEFAULT_NOTIFY_SCHEDULE = "0 9 * * *"
DEFAULT_CLEANUP_SCHEDULE = "0 9 * * 5"

GENERIC_ERROR = (
    "We're sorry, an unexpected error occurred.\n"
    "Please try again later or contact an administrator if the issue persists."
)

DEFAULT_MESSAGES: Dict[str, Any] = {
    "organization_name": "DUCA",
    "verify": {
        "title": "$ verify",
        "error": GENERIC_ERROR,
        "known_issues": (
            "It may take up to one week for your details to appear in our "
            "system. We appreciate your patience!"
        ),
        "success": (
            "**You have been granted {role}!**\n"
            "Explore {announcements} and {resources} for exclusive member content."
        ),
        "already_verified": "You are already a **{role}**, no further action needed!",
        "member_announcements_channel": "#member-announcements",
        "member_resources_channel": "#member-resources",
        "footer": "Thank you for being a valued {club} member",
    },
    "expiration_notice": {
        "title": "Membership Expiration Notice",
        "description": (
            "Hi {full_name},\n\n"
            "This is a friendly reminder that your {club} membership expires **today**.\n\n"
            "**As of next Friday you will no longer have the Member role** and will "
            "need to re-verify.\n\n"
            "To keep your membership benefits, renew your membership and run the "
            "`/verify` command again."
        ),
        "footer": "{club} Membership System",
    },
}


@dataclass
class BotConfig:
    token: str
    log_level: str
    guild_id: int
    member_role_id: int
    supabase_url: str | None = None
    supabase_key: str | None = None
    timezone: str = DEFAULT_TIMEZONE
    notify_schedule: str = DEFAULT_NOTIFY_SCHEDULE
    cleanup_schedule: str = DEFAULT_CLEANUP_SCHEDULE
    roster_refresh_days: int = 7
    audit_database_path: str = "audit.db"
    audit_retention_days: int = 90
    messages: Dict[str, Any] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_MESSAGES)
    )

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def merge_messages(overrides: Dict[str, Any] | None) -> Dict[str, Any]:
    """Overlay user supplied message text on the defaults, one level deep."""
    merged = copy.deepcopy(DEFAULT_MESSAGES)
    if overrides is None:
        return merged
    if not isinstance(overrides, dict):
        raise ValueError("Config 'messages' must be a mapping")
    for key, value in overrides.items():
        if isinstance(merged.get(key), dict):
            if not isinstance(value, dict):
                raise ValueError(f"Config 'messages.{key}' must be a mapping")
            merged[key].update({k: str(v) for k, v in value.items()})
        else:
            merged[key] = value
    return merged


def _require_int(data: Dict[str, Any], key: str) -> int:
    raw = data.get(key)
    if raw is None or str(raw).strip() == "":
        raise ValueError(f"Config missing '{key}'")
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValueError(f"Config '{key}' must be an integer id, got {raw!r}")


def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
    raw = data.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"Config '{key}' must be positive, got {value}")
    return value


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    guild_id = _require_int(data, "guild_id")
    member_role_id = _require_int(data, "member_role_id")

    supabase_url = str(data.get("supabase_url") or "").strip() or None
    supabase_key = str(data.get("supabase_key") or "").strip() or None
    if supabase_url and not supabase_url.startswith(("https://", "http://")):
        raise ValueError(
            f"Config 'supabase_url' must be an http(s) URL, got {supabase_url!r}"
        )

    timezone_name = str(data.get("timezone") or DEFAULT_TIMEZONE)
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone '{timezone_name}'")

    notify_schedule = validate_cron(
        data.get("notify_schedule") or DEFAULT_NOTIFY_SCHEDULE
    )
    cleanup_schedule = validate_cron(
        data.get("cleanup_schedule") or DEFAULT_CLEANUP_SCHEDULE
    )

    audit_database_path = str(data.get("audit_database_path") or "audit.db")

    return BotConfig(
        token=token,
        log_level=log_level,
        guild_id=guild_id,
        member_role_id=member_role_id,
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        timezone=timezone_name,
        notify_schedule=notify_schedule,
        cleanup_schedule=cleanup_schedule,
        roster_refresh_days=_positive_int(data, "roster_refresh_days", 7),
        audit_database_path=audit_database_path,
        audit_retention_days=_positive_int(data, "audit_retention_days", 90),
        messages=merge_messages(data.get("messages")),
    )
