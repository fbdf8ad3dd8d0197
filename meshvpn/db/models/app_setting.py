from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from meshvpn.core.time import utcnow
from meshvpn.db.base import Base


class AppSetting(Base):
    """Small KV storage for counters and runtime-tunable settings."""

    __tablename__ = "app_settings"

    key = Column(String(128), primary_key=True)
    int_value = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()
