from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, func, true
from sqlalchemy.orm import Mapped, mapped_column

from meshvpn.core.time import utcnow
from meshvpn.db.base import Base


class TunnelConfig(Base):
    __tablename__ = "tunnel_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    private_key_enc: Mapped[str] = mapped_column(String, nullable=False)
    public_key: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    client_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    server_public_key: Mapped[str] = mapped_column(String(128), nullable=False)
    server_endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    server_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    allowed_ips: Mapped[str] = mapped_column(String(255), default="0.0.0.0/0, ::/0", server_default="0.0.0.0/0, ::/0", nullable=False)
    dns: Mapped[str] = mapped_column(String(255), default="1.1.1.1, 8.8.8.8", server_default="1.1.1.1, 8.8.8.8", nullable=False)
    persistent_keepalive: Mapped[int] = mapped_column(Integer, default=25, server_default="25", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
