"""Pricing policy tables.

These are owned by the admin side; the engine only reads them.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Integer, Numeric, String, Text, UniqueConstraint,
)

from landedcost.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class MultiplierRule(Base):
    """One layer of the price multiplier policy (user, country, weight range or default)."""
    __tablename__ = "multiplier_rules"
    __table_args__ = (UniqueConstraint("kind", "scope_key", name="uq_multiplier_scope"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(
        Enum("user", "country", "weight_range", "global_default", name="multiplier_kind"),
        nullable=False,
    )
    scope_key = Column(String(100), nullable=False, default="")  # user id, ISO country, range name
    min_weight_kg = Column(Numeric(10, 3), nullable=True)
    max_weight_kg = Column(Numeric(10, 3), nullable=True)  # NULL = open-ended
    price_multiplier = Column(Numeric(10, 4), nullable=False, default=1)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class InsuranceRangeRow(Base):
    """Declared-value band with a fixed premium (all values in cents)."""
    __tablename__ = "insurance_ranges"
    __table_args__ = (UniqueConstraint("min_value", "max_value", name="value_range_idx"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    min_value = Column(Integer, nullable=False)
    max_value = Column(Integer, nullable=False)
    insurance_cost = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class HtsDutyRate(Base):
    """Official tariff schedule line, keyed by canonical HS code."""
    __tablename__ = "hts_duty_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hs_code = Column(String(10), unique=True, nullable=False, index=True)
    description = Column(Text, default="")
    general_rate_text = Column(String(100), default="")
    base_rate_pct = Column(Numeric(7, 3), nullable=True)  # NULL = unparseable text
    created_at = Column(DateTime(timezone=True), default=utcnow)
