"""Cash-flow timeline: actuals plus projections per pay-cycle period."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import Database
from models import (
    Account,
    AccountNature,
    CyclePeriod,
    ForecastInstance,
    ForecastRule,
    InstanceStatus,
    RuleType,
    Transaction,
    UNCATEGORIZED,
)
from periods import (
    CycleOverride,
    Overrides,
    override_map,
    period_bounds,
    period_key_for_date,
    period_label,
    year_period_keys,
)
from recurrence import InstanceGenerator

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ActualRow:
    transaction_id: int
    date: date
    amount_cents: int
    category: Optional[str]
    description: Optional[str] = None
    in_cash_position: bool = True


@dataclass(frozen=True)
class ProjectionRow:
    instance_id: int
    rule_id: int
    rule_name: str
    rule_type: RuleType
    category: Optional[str]
    date: date
    amount_cents: int
    status: InstanceStatus
    transaction_id: Optional[int] = None
    note: Optional[str] = None
    template_cents: Optional[int] = None


@dataclass(frozen=True)
class CategoryLine:
    category: str
    actual_cents: int
    bills_cents: int
    budget_cents: Optional[int]
    projected_cents: int


@dataclass
class PeriodRow:
    key: str
    label: str
    start: date
    end: date
    opening_cents: int = 0
    actual_cents: int = 0
    projected_cents: int = 0
    net_cents: int = 0
    closing_cents: int = 0
    categories: list[CategoryLine] = field(default_factory=list)


@dataclass(frozen=True)
class DetailItem:
    instance_id: int
    rule_id: int
    rule_name: str
    rule_type: RuleType
    category: str
    date: date
    amount_cents: int
    status: InstanceStatus
    note: Optional[str]


@dataclass
class YearReport:
    year: int
    periods: list[PeriodRow]
    details_by_period: dict[str, list[DetailItem]]
    unmatched_transactions: list[ActualRow]


def _category(value: Optional[str]) -> str:
    return (value or "").strip() or UNCATEGORIZED


def effective_total(consumed: int, cap: Optional[int], income: bool = False) -> int:
    """Clamp consumption toward a budget cap.

    A negative cap is an expense budget: the total shows the cap until real
    spending goes past it. A positive cap is an income target, read the
    same way in the other direction. A zero cap takes its direction from
    `income`.
    """
    if cap is None:
        return consumed
    if cap < 0 or (cap == 0 and not income):
        return min(cap, consumed)
    return max(cap, consumed)


def build_timeline(
    keys: list[str],
    opening_cents: int,
    actuals: Iterable[ActualRow],
    projections: Iterable[ProjectionRow],
    overrides: Overrides = None,
) -> tuple[list[PeriodRow], dict[str, list[DetailItem]]]:
    overrides = override_map(overrides)
    key_set = set(keys)

    actual_by: dict[tuple[str, str], int] = defaultdict(int)
    for row in actuals:
        if not row.in_cash_position:
            continue
        key = period_key_for_date(row.date, overrides)
        if key in key_set:
            actual_by[(key, _category(row.category))] += row.amount_cents

    bills_by: dict[tuple[str, str], int] = defaultdict(int)
    budget_sums: dict[tuple[str, str, int, date], int] = defaultdict(int)
    budget_income: dict[int, bool] = {}
    details: dict[str, list[DetailItem]] = {key: [] for key in keys}

    for row in projections:
        key = period_key_for_date(row.date, overrides)
        if key not in key_set:
            continue
        category = _category(row.category)
        details[key].append(
            DetailItem(
                instance_id=row.instance_id,
                rule_id=row.rule_id,
                rule_name=row.rule_name,
                rule_type=row.rule_type,
                category=category,
                date=row.date,
                amount_cents=row.amount_cents,
                status=row.status,
                note=row.note,
            )
        )
        if row.status == InstanceStatus.skipped:
            continue
        if row.rule_type == RuleType.budget:
            # Siblings from a split add back up to the cap of that rule.
            budget_sums[(key, category, row.rule_id, row.date)] += row.amount_cents
            budget_income[row.rule_id] = (row.template_cents or 0) > 0
            continue
        if row.status == InstanceStatus.realized:
            # A linked transaction is already counted as an actual.
            if row.transaction_id is None:
                actual_by[(key, category)] += row.amount_cents
            continue
        bills_by[(key, category)] += row.amount_cents

    budgets_by: dict[tuple[str, str], int] = {}
    income_by: dict[tuple[str, str], bool] = {}
    for (key, category, rule_id, _date), amount in budget_sums.items():
        current = budgets_by.get((key, category))
        if current is None or abs(amount) > abs(current):
            budgets_by[(key, category)] = amount
            income_by[(key, category)] = budget_income[rule_id]

    categories_by_key: dict[str, set[str]] = defaultdict(set)
    for mapping in (actual_by, bills_by, budgets_by):
        for key, category in mapping:
            categories_by_key[key].add(category)

    rows: list[PeriodRow] = []
    running = opening_cents
    for key in keys:
        bounds = period_bounds(key, overrides)
        row = PeriodRow(key=key, label=period_label(key), start=bounds.start, end=bounds.end)
        for category in sorted(categories_by_key.get(key, ())):
            act = actual_by.get((key, category), 0)
            bills = bills_by.get((key, category), 0)
            cap = budgets_by.get((key, category))
            projected = (
                effective_total(act + bills, cap, income_by.get((key, category), False))
                - act
            )
            row.actual_cents += act
            row.projected_cents += projected
            row.categories.append(
                CategoryLine(
                    category=category,
                    actual_cents=act,
                    bills_cents=bills,
                    budget_cents=cap,
                    projected_cents=projected,
                )
            )
        row.net_cents = row.actual_cents + row.projected_cents
        row.opening_cents = running
        row.closing_cents = row.opening_cents + row.net_cents
        running = row.closing_cents
        rows.append(row)
        details[key].sort(key=lambda item: (item.date, item.instance_id))

    return rows, details


def find_unmatched(
    transactions: Iterable[ActualRow],
    linked_transaction_ids: set[int],
    budget_categories: set[str],
) -> list[ActualRow]:
    """Transactions no projection accounts for.

    Linked transactions are matched. The rest are matched only when their
    category carries a budget, which absorbs them.
    """
    unmatched = []
    for row in transactions:
        if row.transaction_id in linked_transaction_ids:
            continue
        category = (row.category or "").strip()
        if not category or category == UNCATEGORIZED or category not in budget_categories:
            unmatched.append(row)
    unmatched.sort(key=lambda r: (r.date, r.transaction_id))
    return unmatched


class ForecastReportService:
    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        generator: Optional[InstanceGenerator] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.generator = generator or InstanceGenerator(db, self.settings)

    async def _read(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.db.session_scope() as session:
            return await fn(session)

    @staticmethod
    async def _overrides(session: AsyncSession) -> dict[str, CycleOverride]:
        cycles = (await session.scalars(select(CyclePeriod))).all()
        return {c.key: CycleOverride(c.key, c.start_date, c.end_date) for c in cycles}

    @staticmethod
    async def _asset_initial_balance(session: AsyncSession) -> int:
        total = await session.scalar(
            select(func.coalesce(func.sum(Account.initial_balance_cents), 0)).where(
                Account.nature == AccountNature.asset
            )
        )
        return int(total or 0)

    @staticmethod
    async def _budget_categories(session: AsyncSession) -> set[str]:
        rows = await session.scalars(
            select(ForecastRule.category).where(
                ForecastRule.type == RuleType.budget,
                ForecastRule.is_active.is_(True),
            )
        )
        return {c.strip() for c in rows.all() if c and c.strip()}

    async def build_year_report(self, year: int, generate: bool = True) -> YearReport:
        if generate:
            # Projections must exist before they are read.
            await self.generator.generate_instances(
                date(year, 1, 1), max(self.settings.horizon_months, 12)
            )

        overrides, initial_balance, budget_categories = await asyncio.gather(
            self._read(self._overrides),
            self._read(self._asset_initial_balance),
            self._read(self._budget_categories),
        )

        keys = year_period_keys(year)
        bounds = [period_bounds(key, overrides) for key in keys]
        window_start = min(b.start for b in bounds)
        window_end = max(b.end for b in bounds)

        async def before_window(session: AsyncSession) -> int:
            total = await session.scalar(
                select(
                    func.coalesce(
                        func.sum(
                            func.coalesce(
                                Transaction.ledger_amount_cents, Transaction.amount_cents
                            )
                        ),
                        0,
                    )
                )
                .join(Account, Transaction.account_id == Account.id)
                .where(
                    Account.nature == AccountNature.asset,
                    Transaction.date < window_start,
                )
            )
            return int(total or 0)

        async def window_transactions(session: AsyncSession) -> list[ActualRow]:
            result = await session.execute(
                select(Transaction, Account.nature)
                .join(Account, Transaction.account_id == Account.id)
                .where(Transaction.date.between(window_start, window_end))
                .order_by(Transaction.date, Transaction.id)
            )
            return [
                ActualRow(
                    transaction_id=txn.id,
                    date=txn.date,
                    amount_cents=txn.ledger_amount,
                    category=txn.category,
                    description=txn.description,
                    in_cash_position=nature == AccountNature.asset,
                )
                for txn, nature in result.all()
            ]

        async def window_projections(session: AsyncSession) -> list[ProjectionRow]:
            result = await session.execute(
                select(ForecastInstance, ForecastRule)
                .join(ForecastRule, ForecastInstance.rule_id == ForecastRule.id)
                .where(ForecastInstance.date.between(window_start, window_end))
                .order_by(ForecastInstance.date, ForecastInstance.id)
            )
            return [
                ProjectionRow(
                    instance_id=instance.id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    rule_type=rule.type,
                    category=rule.category,
                    date=instance.date,
                    amount_cents=instance.effective_amount(rule),
                    status=instance.status,
                    transaction_id=instance.transaction_id,
                    note=instance.note,
                    template_cents=rule.amount_cents,
                )
                for instance, rule in result.all()
            ]

        async def linked_ids(session: AsyncSession) -> set[int]:
            rows = await session.scalars(
                select(ForecastInstance.transaction_id).where(
                    ForecastInstance.transaction_id.is_not(None)
                )
            )
            return set(rows.all())

        earlier, transactions, projections, linked = await asyncio.gather(
            self._read(before_window),
            self._read(window_transactions),
            self._read(window_projections),
            self._read(linked_ids),
        )

        # An override can stretch last year's final period into this window.
        carried = sum(
            t.amount_cents
            for t in transactions
            if t.in_cash_position and period_key_for_date(t.date, overrides) < keys[0]
        )
        periods, details = build_timeline(
            keys, initial_balance + earlier + carried, transactions, projections, overrides
        )
        key_set = set(keys)
        in_year = [
            t for t in transactions if period_key_for_date(t.date, overrides) in key_set
        ]
        unmatched = find_unmatched(in_year, linked, budget_categories)
        logger.info(
            f"forecast_report: year={year} window={window_start}..{window_end} "
            f"transactions={len(transactions)} projections={len(projections)} "
            f"unmatched={len(unmatched)}"
        )
        return YearReport(
            year=year,
            periods=periods,
            details_by_period=details,
            unmatched_transactions=unmatched,
        )
