from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountNature(str, Enum):
    asset = "asset"
    liability = "liability"


class RuleType(str, Enum):
    recurring = "recurring"
    one_off = "one_off"
    installment = "installment"
    budget = "budget"


class RuleFrequency(str, Enum):
    monthly = "monthly"


class InstanceStatus(str, Enum):
    projected = "projected"
    realized = "realized"
    skipped = "skipped"


UNCATEGORIZED = "Uncategorized"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    nature: Mapped[AccountNature] = mapped_column(
        SAEnum(AccountNature), nullable=False, default=AccountNature.asset
    )
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # Amount in the ledger currency; NULL when the native amount already is.
    ledger_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    currency_code: Mapped[Optional[str]] = mapped_column(String(3))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
    )

    @property
    def ledger_amount(self) -> int:
        if self.ledger_amount_cents is not None:
            return self.ledger_amount_cents
        return self.amount_cents


class ForecastRule(Base, TimestampMixin):
    __tablename__ = "forecast_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[RuleType] = mapped_column(SAEnum(RuleType), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    frequency: Mapped[Optional[RuleFrequency]] = mapped_column(SAEnum(RuleFrequency))
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    installments_count: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    source_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id"), unique=True
    )

    instances: Mapped[list["ForecastInstance"]] = relationship(
        "ForecastInstance", back_populates="rule"
    )

    __table_args__ = (
        Index("ix_forecast_rules_active_type", "is_active", "type"),
        Index("ix_forecast_rules_category_type", "category", "type"),
    )


class ForecastInstance(Base, TimestampMixin):
    __tablename__ = "forecast_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rule_id: Mapped[int] = mapped_column(
        ForeignKey("forecast_rules.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # Override of the rule's template amount; NULL follows the rule.
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[InstanceStatus] = mapped_column(
        SAEnum(InstanceStatus), nullable=False, default=InstanceStatus.projected
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    split_from_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("forecast_instances.id", ondelete="SET NULL")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)

    rule: Mapped["ForecastRule"] = relationship(
        "ForecastRule", back_populates="instances"
    )

    __table_args__ = (
        Index(
            "uq_forecast_instance_rule_date",
            "rule_id",
            "date",
            unique=True,
            sqlite_where=text("split_from_id IS NULL"),
            postgresql_where=text("split_from_id IS NULL"),
        ),
        Index("ix_forecast_instances_date", "date"),
        Index("ix_forecast_instances_transaction", "transaction_id"),
    )

    def effective_amount(self, rule: ForecastRule) -> int:
        if self.amount_cents is not None:
            return self.amount_cents
        return rule.amount_cents


class CyclePeriod(Base):
    __tablename__ = "cycles"

    key: Mapped[str] = mapped_column(String(7), primary_key=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
