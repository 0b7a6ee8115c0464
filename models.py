from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class RuleType(str, Enum):
    percent = "percent"
    fixed = "fixed"


class AllocationCategory(str, Enum):
    savings = "savings"
    investing = "investing"
    spending = "spending"
    debt = "debt"
    other = "other"


class IncomePlanStatus(str, Enum):
    planned = "planned"
    matched = "matched"
    missed = "missed"


class AllocationStatus(str, Enum):
    pending = "pending"
    complete = "complete"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False, default="checking")
    bank: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    number: Mapped[Optional[str]] = mapped_column(String(40))

    rules: Mapped[list["AllocationRule"]] = relationship(
        "AllocationRule", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class AllocationRule(Base, TimestampMixin):
    __tablename__ = "allocation_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    # free-form in practice, AllocationCategory lists the known buckets
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(SAEnum(RuleType), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="rules")

    __table_args__ = (
        Index("ix_allocation_rules_user_priority", "user_id", "priority", "id"),
        CheckConstraint("value >= 0", name="ck_allocation_rule_value_positive"),
    )


class IncomePlan(Base, TimestampMixin):
    __tablename__ = "income_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expected_date: Mapped[str] = mapped_column(String(10), nullable=False)
    expected_amount: Mapped[float] = mapped_column(Float, nullable=False)
    label: Mapped[str] = mapped_column(String(120), nullable=False)
    recurrence: Mapped[str] = mapped_column(String(40), nullable=False, default="once")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[IncomePlanStatus] = mapped_column(
        SAEnum(IncomePlanStatus), default=IncomePlanStatus.planned, nullable=False
    )
    actual_amount: Mapped[Optional[float]] = mapped_column(Float)
    matched_transaction_id: Mapped[Optional[int]] = mapped_column(Integer)
    date_received: Mapped[Optional[str]] = mapped_column(String(10))
    allocations_version: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    # set by manual record changes, cleared by the next allocation run
    allocations_customized: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    allocation_records: Mapped[list["AllocationRecord"]] = relationship(
        "AllocationRecord", back_populates="income_plan"
    )

    __table_args__ = (
        Index("ix_income_plans_user_date", "user_id", "expected_date"),
        Index("ix_income_plans_user_status", "user_id", "status"),
    )

    @property
    def authoritative_amount(self) -> float:
        if self.status == IncomePlanStatus.matched and self.actual_amount is not None:
            return self.actual_amount
        return self.expected_amount

    @property
    def is_forecast(self) -> bool:
        return self.status != IncomePlanStatus.matched


class AllocationRecord(Base, TimestampMixin):
    __tablename__ = "allocation_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    income_plan_id: Mapped[int] = mapped_column(
        ForeignKey("income_plans.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    rule_id: Mapped[Optional[int]] = mapped_column(ForeignKey("allocation_rules.id"))
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    is_forecast: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[AllocationStatus] = mapped_column(
        SAEnum(AllocationStatus), default=AllocationStatus.pending, nullable=False
    )
    matched_amount: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    income_plan: Mapped["IncomePlan"] = relationship(
        "IncomePlan", back_populates="allocation_records"
    )
    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        Index("ix_allocation_records_plan", "income_plan_id"),
        Index("ix_allocation_records_user_rule", "user_id", "rule_id"),
        # ids are never reused after a plan's records are replaced
        {"sqlite_autoincrement": True},
    )
