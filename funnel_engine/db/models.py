from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from funnel_engine.db.base import Base
from funnel_engine.services.feedback import utcnow


class ResourceRecord(Base):
    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False, index=True)
    link: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin_kind: Mapped[str] = mapped_column(String(length=32), nullable=False)
    value_category: Mapped[str] = mapped_column(String(length=32), nullable=False)
    promo_code: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class FunnelAssignmentRecord(Base):
    __tablename__ = "funnel_resources"
    __table_args__ = (
        UniqueConstraint("funnel_id", "resource_id", name="uq_funnel_resource"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funnel_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(
        String(length=64), ForeignKey("resources.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
