from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import Database
from fx_rates import FxRateService
from models import (
    Account,
    CyclePeriod,
    ForecastInstance,
    ForecastRule,
    InstanceStatus,
    RuleFrequency,
    RuleType,
    Transaction,
    UNCATEGORIZED,
)
from periods import (
    CycleOverride,
    add_months_clamped,
    default_cycle,
    parse_period_key,
)
from recurrence import existing_instance_pairs, local_today
from schemas import (
    BudgetIn,
    BudgetRuleIn,
    CycleIn,
    ForecastPlanIn,
    ForecastRuleIn,
    PayIn30Plan,
    RepeatMonthlyPlan,
)

logger = logging.getLogger(__name__)

PAY_LATER_DAYS = 30


class NotFoundError(ValueError):
    pass


class ForecastValidationError(ValueError):
    pass


def _rule_columns(data: ForecastRuleIn) -> dict[str, object]:
    return {
        "name": data.name,
        "type": RuleType(data.type),
        "amount_cents": data.amount_cents,
        "currency_code": data.currency_code.upper(),
        "account_id": data.account_id,
        "category": data.category,
        "start_date": data.start_date,
        "end_date": data.end_date,
        "is_active": data.is_active,
        "source_transaction_id": data.source_transaction_id,
        "frequency": getattr(data, "frequency", None),
        "day_of_month": getattr(data, "day_of_month", None),
        "installments_count": getattr(data, "installments_count", None),
    }


async def _discard_projections(session: AsyncSession, rule_ids: list[int]) -> int:
    """Drop template-following projections so generation rebuilds them.

    Instances the user touched (amount overrides, remainders, realized or
    skipped rows) are left alone.
    """
    if not rule_ids:
        return 0
    result = await session.execute(
        delete(ForecastInstance).where(
            ForecastInstance.rule_id.in_(rule_ids),
            ForecastInstance.status == InstanceStatus.projected,
            ForecastInstance.amount_cents.is_(None),
            ForecastInstance.split_from_id.is_(None),
        )
    )
    return result.rowcount or 0


class RuleService:
    def __init__(self, db: Database, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    async def get(self, rule_id: int) -> ForecastRule:
        async with self.db.session_scope() as session:
            return await self._get(session, rule_id)

    @staticmethod
    async def _get(session: AsyncSession, rule_id: int) -> ForecastRule:
        rule = await session.get(ForecastRule, rule_id)
        if not rule:
            raise NotFoundError("Rule not found")
        return rule

    async def list_active(self, rule_type: Optional[RuleType] = None) -> list[ForecastRule]:
        stmt = (
            select(ForecastRule)
            .where(ForecastRule.is_active.is_(True))
            .order_by(ForecastRule.type, ForecastRule.name, ForecastRule.id)
        )
        if rule_type:
            stmt = stmt.where(ForecastRule.type == rule_type)
        async with self.db.session_scope() as session:
            return list((await session.scalars(stmt)).all())

    async def _check_account(self, session: AsyncSession, account_id: Optional[int]) -> None:
        if account_id is None:
            return
        if not await session.get(Account, account_id):
            raise NotFoundError("Account not found")

    async def create(self, data: ForecastRuleIn) -> ForecastRule:
        async with self.db.session_scope() as session:
            await self._check_account(session, data.account_id)
            if isinstance(data, BudgetRuleIn):
                return await self._upsert_budget(session, data)
            rule = ForecastRule(**_rule_columns(data))
            session.add(rule)
            await session.flush()
            logger.info(f"rule_created: id={rule.id} type={rule.type.value}")
            return rule

    async def update(self, rule_id: int, data: ForecastRuleIn) -> ForecastRule:
        async with self.db.session_scope() as session:
            rule = await self._get(session, rule_id)
            await self._check_account(session, data.account_id)
            if isinstance(data, BudgetRuleIn):
                clash = await self._active_budget(session, data.category)
                if clash and clash.id != rule.id:
                    raise ForecastValidationError(
                        f"Category {data.category!r} already has a budget"
                    )
            was_active = rule.is_active
            for field, value in _rule_columns(data).items():
                setattr(rule, field, value)
            if was_active and not data.is_active:
                await self._deactivate(session, rule)
                await session.flush()
                return rule
            # The schedule may have moved; let generation lay it out again.
            await _discard_projections(session, [rule.id])
            await session.flush()
            return rule

    async def delete(self, rule_id: int) -> int:
        """Soft-delete the rule and hard-delete its projected instances."""
        async with self.db.session_scope() as session:
            rule = await self._get(session, rule_id)
            return await self._deactivate(session, rule)

    @staticmethod
    async def _deactivate(session: AsyncSession, rule: ForecastRule) -> int:
        rule.is_active = False
        doomed = select(ForecastInstance.id).where(
            ForecastInstance.rule_id == rule.id,
            ForecastInstance.status == InstanceStatus.projected,
        )
        result = await session.execute(
            delete(ForecastInstance).where(ForecastInstance.id.in_(doomed))
        )
        removed = result.rowcount or 0
        logger.info(f"rule_deactivated: id={rule.id} projections_removed={removed}")
        return removed

    @staticmethod
    async def _active_budget(
        session: AsyncSession, category: str
    ) -> Optional[ForecastRule]:
        stmt = (
            select(ForecastRule)
            .where(
                ForecastRule.type == RuleType.budget,
                ForecastRule.is_active.is_(True),
                ForecastRule.category == category,
            )
            .order_by(ForecastRule.id)
            .limit(1)
        )
        return await session.scalar(stmt)

    async def _upsert_budget(
        self, session: AsyncSession, data: BudgetRuleIn
    ) -> ForecastRule:
        existing = await self._active_budget(session, data.category)
        if existing:
            existing.name = data.name
            existing.amount_cents = data.amount_cents
            existing.currency_code = data.currency_code.upper()
            existing.account_id = data.account_id
            existing.end_date = data.end_date
            if data.start_date != existing.start_date:
                existing.start_date = data.start_date
                await _discard_projections(session, [existing.id])
            await session.flush()
            return existing
        rule = ForecastRule(**_rule_columns(data))
        session.add(rule)
        await session.flush()
        logger.info(f"budget_created: id={rule.id} category={rule.category}")
        return rule

    async def upsert_budget(self, data: BudgetIn) -> Optional[ForecastRule]:
        """Set the budget cap of a category; a zero cap removes it."""
        category = data.category.strip()
        async with self.db.session_scope() as session:
            if data.amount_cents == 0:
                existing = await self._active_budget(session, category)
                if existing:
                    await self._deactivate(session, existing)
                return None
            rule_in = BudgetRuleIn(
                name=f"Budget: {category}",
                category=category,
                amount_cents=data.amount_cents,
                currency_code=self.settings.ledger_currency,
                start_date=data.start_date or local_today(self.settings),
            )
            existing = await self._active_budget(session, category)
            if existing and data.start_date is None:
                rule_in.start_date = existing.start_date
            return await self._upsert_budget(session, rule_in)


@dataclass(frozen=True)
class LinkResult:
    instance_id: int
    transaction_id: int
    full_match: bool
    remainder_id: Optional[int] = None
    remainder_cents: int = 0


@dataclass(frozen=True)
class Candidate:
    instance_id: int
    rule_id: int
    rule_name: str
    category: Optional[str]
    date: date
    amount_cents: int
    days_apart: int


class InstanceService:
    def __init__(self, db: Database, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    @staticmethod
    async def _get(session: AsyncSession, instance_id: int) -> ForecastInstance:
        instance = await session.get(ForecastInstance, instance_id)
        if not instance:
            raise NotFoundError("Forecast instance not found")
        return instance

    async def get(self, instance_id: int) -> ForecastInstance:
        async with self.db.session_scope() as session:
            return await self._get(session, instance_id)

    async def for_rule(self, rule_id: int) -> list[ForecastInstance]:
        stmt = (
            select(ForecastInstance)
            .where(ForecastInstance.rule_id == rule_id)
            .order_by(ForecastInstance.date, ForecastInstance.id)
        )
        async with self.db.session_scope() as session:
            return list((await session.scalars(stmt)).all())

    async def link_transaction(self, transaction_id: int, instance_id: int) -> LinkResult:
        """Settle a projected instance with a real transaction.

        A transaction smaller than the projection (beyond the tolerance)
        realizes the instance at the paid amount and leaves the gap behind as
        a new projected sibling on the same rule and date.
        """
        async with self.db.session_scope() as session:
            txn = await session.get(Transaction, transaction_id)
            if not txn:
                raise NotFoundError("Transaction not found")
            instance = await self._get(session, instance_id)
            if instance.status != InstanceStatus.projected:
                raise ForecastValidationError(
                    f"Only projected instances can be linked (status is {instance.status.value})"
                )
            already = await session.scalar(
                select(ForecastInstance.id)
                .where(ForecastInstance.transaction_id == transaction_id)
                .limit(1)
            )
            if already:
                raise ForecastValidationError(
                    f"Transaction is already linked to instance {already}"
                )
            rule = await session.get(ForecastRule, instance.rule_id)
            effective = instance.effective_amount(rule)
            paid = txn.ledger_amount
            if effective and paid and (effective < 0) != (paid < 0):
                raise ForecastValidationError(
                    "Transaction and forecast point in opposite directions"
                )

            tolerance = self.settings.match_tolerance_cents
            full_match = abs(paid) >= abs(effective) - tolerance

            instance.status = InstanceStatus.realized
            instance.transaction_id = txn.id
            instance.amount_cents = paid

            remainder = None
            if not full_match:
                remainder = ForecastInstance(
                    rule_id=instance.rule_id,
                    date=instance.date,
                    amount_cents=effective - paid,
                    status=InstanceStatus.projected,
                    split_from_id=instance.id,
                    note=f"Remainder of instance {instance.id}",
                )
                session.add(remainder)
            await session.flush()

            logger.info(
                f"instance_linked: instance={instance.id} transaction={txn.id} "
                f"full={full_match} remainder={remainder.amount_cents if remainder else 0}"
            )
            return LinkResult(
                instance_id=instance.id,
                transaction_id=txn.id,
                full_match=full_match,
                remainder_id=remainder.id if remainder else None,
                remainder_cents=remainder.amount_cents if remainder else 0,
            )

    async def set_instance_amount(
        self, instance_id: int, amount_cents: Optional[int]
    ) -> ForecastInstance:
        """Scenario override; ``None`` goes back to the rule's amount."""
        async with self.db.session_scope() as session:
            instance = await self._get(session, instance_id)
            if instance.status == InstanceStatus.realized:
                raise ForecastValidationError(
                    "Realized instances carry the settled amount and cannot be overridden"
                )
            instance.amount_cents = amount_cents
            await session.flush()
            return instance

    async def set_instance_status(
        self, instance_id: int, status: Union[InstanceStatus, str]
    ) -> ForecastInstance:
        status = InstanceStatus(status)
        async with self.db.session_scope() as session:
            instance = await self._get(session, instance_id)
            if instance.status == status:
                return instance
            if instance.status == InstanceStatus.realized:
                instance.transaction_id = None
            if status == InstanceStatus.realized and instance.amount_cents is None:
                # Pin the amount so later template edits leave history alone.
                rule = await session.get(ForecastRule, instance.rule_id)
                instance.amount_cents = rule.amount_cents
            instance.status = status
            await session.flush()
            return instance

    async def candidates_for_transaction(
        self, transaction_id: int, limit: int = 20
    ) -> list[Candidate]:
        async with self.db.session_scope() as session:
            txn = await session.get(Transaction, transaction_id)
            if not txn:
                raise NotFoundError("Transaction not found")
            rows = (
                await session.execute(
                    select(ForecastInstance, ForecastRule)
                    .join(ForecastRule, ForecastInstance.rule_id == ForecastRule.id)
                    .where(ForecastInstance.status == InstanceStatus.projected)
                )
            ).all()

        candidates = []
        for instance, rule in rows:
            amount = instance.effective_amount(rule)
            if amount and txn.ledger_amount and (amount < 0) != (txn.ledger_amount < 0):
                continue
            candidates.append(
                Candidate(
                    instance_id=instance.id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    category=rule.category,
                    date=instance.date,
                    amount_cents=amount,
                    days_apart=abs((instance.date - txn.date).days),
                )
            )
        candidates.sort(key=lambda c: (c.days_apart, c.date, c.instance_id))
        return candidates[:limit]


class CycleService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def list_cycles(self) -> list[CyclePeriod]:
        async with self.db.session_scope() as session:
            return list(
                (await session.scalars(select(CyclePeriod).order_by(CyclePeriod.key))).all()
            )

    async def overrides(self) -> dict[str, CycleOverride]:
        return {
            c.key: CycleOverride(c.key, c.start_date, c.end_date)
            for c in await self.list_cycles()
        }

    @staticmethod
    def _check_key(key: str) -> None:
        try:
            parse_period_key(key)
        except ValueError as exc:
            raise ForecastValidationError(str(exc)) from exc

    @staticmethod
    async def _reset_budget_projections(session: AsyncSession) -> int:
        budget_ids = list(
            (
                await session.scalars(
                    select(ForecastRule.id).where(ForecastRule.type == RuleType.budget)
                )
            ).all()
        )
        return await _discard_projections(session, budget_ids)

    async def upsert_cycle(self, key: str, data: CycleIn) -> CyclePeriod:
        self._check_key(key)
        async with self.db.session_scope() as session:
            cycle = await session.get(CyclePeriod, key)
            if cycle:
                cycle.start_date = data.start_date
                cycle.end_date = data.end_date
            else:
                cycle = CyclePeriod(
                    key=key, start_date=data.start_date, end_date=data.end_date
                )
                session.add(cycle)
            # Budget instances are anchored on period starts.
            removed = await self._reset_budget_projections(session)
            await session.flush()
            logger.info(
                f"cycle_saved: key={key} start={data.start_date} end={data.end_date} "
                f"budget_projections_reset={removed}"
            )
            return cycle

    async def delete_cycle(self, key: str) -> None:
        self._check_key(key)
        async with self.db.session_scope() as session:
            cycle = await session.get(CyclePeriod, key)
            if not cycle:
                raise NotFoundError("Cycle not found")
            await session.delete(cycle)
            await self._reset_budget_projections(session)

    @staticmethod
    def default_cycle(key: str) -> CycleOverride:
        try:
            return default_cycle(key)
        except ValueError as exc:
            raise ForecastValidationError(str(exc)) from exc


class ForecastPlanService:
    """Turn a real transaction into a forecast rule.

    ``pay_in_30`` projects a single settlement 30 days after the purchase
    (buy now, pay later); ``repeat_monthly`` expects the same movement every
    month from the next month on.
    """

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        fx: Optional[FxRateService] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.fx = fx or FxRateService(self.settings)

    async def apply_plan(self, transaction_id: int, plan: ForecastPlanIn) -> ForecastRule:
        async with self.db.session_scope() as session:
            txn = await session.get(Transaction, transaction_id)
            if not txn:
                raise NotFoundError("Transaction not found")
            if txn.ledger_amount_cents is not None:
                amount = txn.ledger_amount_cents
            else:
                amount = await self.fx.ledger_amount_cents_async(
                    txn.amount_cents, txn.currency_code, txn.date
                )
            category = (txn.category or "").strip() or UNCATEGORIZED
            label = txn.description or "Transaction"

            if isinstance(plan, PayIn30Plan):
                due = txn.date + timedelta(days=PAY_LATER_DAYS)
                fields = {
                    "name": f"Pay in 30 - {label}",
                    "type": RuleType.one_off,
                    "start_date": due,
                    "end_date": due,
                    "frequency": None,
                    "day_of_month": None,
                }
                dates = [due]
            elif isinstance(plan, RepeatMonthlyPlan):
                first = add_months_clamped(txn.date, 1)
                fields = {
                    "name": f"Monthly - {label}",
                    "type": RuleType.recurring,
                    "start_date": first,
                    "end_date": None,
                    "frequency": RuleFrequency.monthly,
                    "day_of_month": txn.date.day,
                }
                dates = [
                    add_months_clamped(first, i) for i in range(plan.months_ahead)
                ]
            else:
                raise ForecastValidationError("Unknown forecast plan")

            fields.update(
                {
                    "account_id": txn.account_id,
                    "category": category,
                    "amount_cents": amount,
                    "currency_code": self.settings.ledger_currency,
                    "installments_count": None,
                    "is_active": True,
                }
            )
            rule = await session.scalar(
                select(ForecastRule).where(
                    ForecastRule.source_transaction_id == txn.id
                )
            )
            if rule:
                schedule_changed = (
                    rule.type != fields["type"]
                    or rule.start_date != fields["start_date"]
                )
                for field, value in fields.items():
                    setattr(rule, field, value)
                if schedule_changed:
                    await _discard_projections(session, [rule.id])
            else:
                rule = ForecastRule(source_transaction_id=txn.id, **fields)
                session.add(rule)
            await session.flush()

            existing = await existing_instance_pairs(
                session, {rule.id}, min(dates), max(dates)
            )
            for d in dates:
                if (rule.id, d) in existing:
                    continue
                session.add(
                    ForecastInstance(
                        rule_id=rule.id,
                        date=d,
                        status=InstanceStatus.projected,
                        note=f"Created from transaction {txn.id}",
                    )
                )
            await session.flush()
            logger.info(
                f"forecast_plan: transaction={txn.id} rule={rule.id} "
                f"type={rule.type.value} instances={len(dates)}"
            )
            return rule
