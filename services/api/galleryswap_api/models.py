from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from galleryswap_api.db import Base


Case = Literal["BASE", "TEST"]
ExperimentStatus = Literal["DRAFT", "ACTIVE", "PAUSED", "COMPLETED"]
VariantScope = Literal["PRODUCT", "VARIANT"]
InteractionType = Literal["IMPRESSION", "ADD_TO_CART", "PURCHASE"]
TriggeredBy = Literal["CRON", "MANUAL", "SYSTEM"]

CASES: tuple[str, ...] = ("BASE", "TEST")
EVENT_TYPES: tuple[str, ...] = ("IMPRESSION", "ADD_TO_CART", "PURCHASE")


class Experiment(Base):
    __tablename__ = "experiments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    shop: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="DRAFT", index=True
    )
    current_case: Mapped[str] = mapped_column(String, nullable=False, default="BASE")
    variant_scope: Mapped[str] = mapped_column(
        String, nullable=False, default="PRODUCT"
    )
    rotation_interval_sec: Mapped[int] = mapped_column(
        Integer, nullable=False, default=24 * 60 * 60
    )
    last_rotated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_rotation_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    base_media_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    test_media_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    # media id -> public image url (for the storefront swap).
    media_urls_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    needs_attention: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    attention_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Bumped by every lifecycle write; writers match on the value they read.
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    variant_overrides: Mapped[list[VariantOverride]] = relationship(
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="VariantOverride.variant_id",
    )


class VariantOverride(Base):
    __tablename__ = "variant_overrides"
    __table_args__ = (
        UniqueConstraint(
            "experiment_id", "variant_id", name="uq_variant_overrides_experiment_variant"
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    experiment_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("experiments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id: Mapped[str] = mapped_column(String, nullable=False)
    variant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    base_hero_media_id: Mapped[str | None] = mapped_column(String, nullable=True)
    test_hero_media_id: Mapped[str | None] = mapped_column(String, nullable=True)
    hero_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    hero_failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    experiment: Mapped[Experiment] = relationship(back_populates="variant_overrides")


class InteractionEvent(Base):
    """Append-only storefront signal.

    References experiments/products by id only: rows outlive experiment
    deletion for audit.
    """

    __tablename__ = "interaction_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    variant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    experiment_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )
    observed_case: Mapped[str | None] = mapped_column(String, nullable=True)
    shop: Mapped[str | None] = mapped_column(String, nullable=True)
    revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    # IMPRESSION: "<session>|<experiment or product>|<yyyymmdd>".
    # Order-linked PURCHASE: "order:<order id>|<product>|<variant or ->".
    dedup_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )


class DailyStatistic(Base):
    __tablename__ = "daily_statistics"
    __table_args__ = (
        UniqueConstraint(
            "experiment_id",
            "date",
            "observed_case",
            "variant_id",
            name="uq_daily_statistics_key",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    experiment_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    observed_case: Mapped[str] = mapped_column(String, nullable=False)
    # "" when the experiment is product-scoped.
    variant_id: Mapped[str] = mapped_column(String, nullable=False, default="")
    impressions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    add_to_carts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    @property
    def ctr(self) -> float:
        impressions = int(self.impressions or 0)
        if impressions <= 0:
            return 0.0
        return float(self.add_to_carts or 0) / float(impressions)

    @property
    def conversion_rate(self) -> float:
        impressions = int(self.impressions or 0)
        if impressions <= 0:
            return 0.0
        return float(self.orders or 0) / float(impressions)


class RotationEvent(Base):
    __tablename__ = "rotation_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    experiment_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    from_case: Mapped[str] = mapped_column(String, nullable=False)
    to_case: Mapped[str] = mapped_column(String, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
