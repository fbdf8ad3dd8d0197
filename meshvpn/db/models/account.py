from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from meshvpn.core.time import utcnow
from meshvpn.db.base import Base


class Account(Base):
    """Claim-side view of a wallet: when it last claimed and how much."""

    __tablename__ = "accounts"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), default="user", server_default="user", nullable=False)
    last_reward_claim: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    total_rewards_claimed: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RewardClaim(Base):
    __tablename__ = "reward_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # pending | success | failed
    status: Mapped[str] = mapped_column(String(16), default="success", server_default="success", nullable=False)
