import logging
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import Database
from models import CyclePeriod, ForecastInstance, ForecastRule, InstanceStatus
from periods import (
    CycleOverride,
    add_months_clamped,
    next_period_key,
    period_key_for_date,
    period_start,
)
from schemas import (
    BudgetRuleIn,
    ForecastRuleIn,
    InstallmentRuleIn,
    OneOffRuleIn,
    RecurringRuleIn,
    rule_from_row,
)

logger = logging.getLogger(__name__)

MAX_PERIODS = 600


def local_today(settings: Optional[Settings] = None) -> date:
    settings = settings or get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def _months_between(earlier: date, later: date) -> int:
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def _monthly_dates(
    anchor: date,
    window_start: date,
    window_end: date,
    end_date: Optional[date],
) -> Iterator[date]:
    # Always step from the anchor so a 31st keeps returning to month ends.
    index = max(0, _months_between(anchor, window_start) - 1)
    while True:
        candidate = add_months_clamped(anchor, index)
        if candidate > window_end:
            return
        if end_date and candidate > end_date:
            return
        if candidate >= window_start:
            yield candidate
        index += 1


def rule_occurrences(
    rule: ForecastRuleIn,
    window_start: date,
    window_end: date,
    overrides: Optional[dict[str, CycleOverride]] = None,
) -> list[date]:
    """Dates a rule should have an instance on inside the window."""
    if isinstance(rule, OneOffRuleIn):
        if window_start <= rule.start_date <= window_end:
            return [rule.start_date]
        return []

    if isinstance(rule, InstallmentRuleIn):
        dates = []
        for i in range(rule.installments_count):
            candidate = add_months_clamped(rule.start_date, i)
            if rule.end_date and candidate > rule.end_date:
                break
            if window_start <= candidate <= window_end:
                dates.append(candidate)
        return dates

    if isinstance(rule, RecurringRuleIn):
        return list(
            _monthly_dates(rule.start_date, window_start, window_end, rule.end_date)
        )

    if isinstance(rule, BudgetRuleIn):
        # Budgets live on the cycle calendar: one instance per period,
        # anchored at the period start.
        first = max(rule.start_date, window_start)
        key = period_key_for_date(first, overrides)
        dates = []
        for _ in range(MAX_PERIODS):
            anchor = period_start(key, overrides)
            if anchor > window_end:
                break
            if rule.end_date and anchor > rule.end_date:
                break
            if anchor >= window_start:
                dates.append(anchor)
            key = next_period_key(key)
        return dates

    raise ValueError(f"Unsupported rule type: {rule.type}")


async def existing_instance_pairs(
    session: AsyncSession, rule_ids: set[int], start: date, end: date
) -> set[tuple[int, date]]:
    """All (rule_id, date) pairs already materialized, in one query."""
    stmt = select(ForecastInstance.rule_id, ForecastInstance.date).where(
        ForecastInstance.rule_id.in_(rule_ids),
        ForecastInstance.date.between(start, end),
    )
    return {(row.rule_id, row.date) for row in await session.execute(stmt)}


class InstanceGenerator:
    def __init__(self, db: Database, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    def window(self, start_date: date, horizon_months: int) -> tuple[date, date]:
        window_start = start_date - timedelta(days=self.settings.lookback_days)
        window_end = add_months_clamped(start_date, horizon_months) - timedelta(
            days=1
        )
        return window_start, window_end

    async def generate_instances(
        self, start_date: date, horizon_months: Optional[int] = None
    ) -> int:
        horizon = horizon_months or self.settings.horizon_months
        window_start, window_end = self.window(start_date, horizon)

        async with self.db.session_scope() as session:
            rules = (
                await session.scalars(
                    select(ForecastRule)
                    .where(ForecastRule.is_active.is_(True))
                    .order_by(ForecastRule.id)
                )
            ).all()
            cycles = (await session.scalars(select(CyclePeriod))).all()
            overrides = {
                c.key: CycleOverride(c.key, c.start_date, c.end_date) for c in cycles
            }

            candidates: list[tuple[int, date]] = []
            for row in rules:
                try:
                    rule = rule_from_row(row)
                    dates = rule_occurrences(rule, window_start, window_end, overrides)
                except (ValidationError, ValueError) as exc:
                    logger.warning(
                        f"forecast_generation: skipping rule id={row.id} "
                        f"type={row.type.value}: {exc}"
                    )
                    continue
                candidates.extend((row.id, d) for d in dates)

            if not candidates:
                logger.info(
                    f"forecast_generation: window={window_start}..{window_end} "
                    f"rules={len(rules)} inserted=0"
                )
                return 0

            existing = await existing_instance_pairs(
                session, {rule_id for rule_id, _ in candidates}, window_start, window_end
            )
            missing = []
            seen: set[tuple[int, date]] = set()
            for pair in candidates:
                if pair in existing or pair in seen:
                    continue
                seen.add(pair)
                missing.append(pair)

            try:
                inserted = await self._insert(session, missing)
            except IntegrityError:
                # Another run inserted some of the same pairs first.
                await session.rollback()
                logger.info(
                    "forecast_generation: conflict on batch insert, retrying row by row"
                )
                inserted = await self._insert_each(missing)
            logger.info(
                f"forecast_generation: window={window_start}..{window_end} "
                f"rules={len(rules)} candidates={len(candidates)} inserted={inserted}"
            )
            return inserted

    @staticmethod
    async def _insert(session: AsyncSession, pairs: list[tuple[int, date]]) -> int:
        if not pairs:
            return 0
        session.add_all(
            [
                ForecastInstance(
                    rule_id=rule_id, date=d, status=InstanceStatus.projected
                )
                for rule_id, d in pairs
            ]
        )
        await session.flush()
        return len(pairs)

    async def _insert_each(self, pairs: list[tuple[int, date]]) -> int:
        inserted = 0
        for rule_id, d in pairs:
            try:
                async with self.db.session_scope() as session:
                    inserted += await self._insert(session, [(rule_id, d)])
            except IntegrityError:
                continue
        return inserted
