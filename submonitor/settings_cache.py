from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import json
import logging
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Table,
    Text,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

SUPPORTED_THEMES = {"light", "dark", "system"}

metadata = MetaData()

cached_settings = Table(
    "cached_settings",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=False),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)


@dataclass(frozen=True)
class UserSettings:
    notify_before_renewal: bool = True
    renewal_notification_days: int = 3
    notify_on_price_change: bool = True
    default_currency: str = "USD"
    default_timezone: Optional[str] = None
    theme: str = "light"
    is_telegram_linked: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "UserSettings":
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


class SettingsCache:
    """Last known settings per user, kept across restarts."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def init_schema(self) -> None:
        metadata.create_all(self.engine)

    def load(self, user_id: int) -> UserSettings:
        with self.engine.begin() as conn:
            raw = conn.execute(
                select(cached_settings.c.value).where(cached_settings.c.user_id == user_id)
            ).scalar_one_or_none()
        if raw is None:
            return UserSettings()
        try:
            return UserSettings.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("Discarding unreadable cached settings for user %s: %s", user_id, exc)
            return UserSettings()

    def save(self, user_id: int, settings: UserSettings) -> UserSettings:
        value = json.dumps(asdict(settings))
        with self.engine.begin() as conn:
            result = conn.execute(
                update(cached_settings)
                .where(cached_settings.c.user_id == user_id)
                .values(value=value)
            )
            if result.rowcount == 0:
                conn.execute(insert(cached_settings).values(user_id=user_id, value=value))
        return settings

    def update_theme(self, user_id: int, theme: str) -> UserSettings:
        normalized = theme.strip().lower()
        if normalized not in SUPPORTED_THEMES:
            raise ValueError("Theme must be light, dark, or system.")
        return self.save(user_id, replace(self.load(user_id), theme=normalized))
