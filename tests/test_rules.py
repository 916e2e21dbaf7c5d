import asyncio
from datetime import date

import pytest
from pydantic import ValidationError

from config import Settings
from database import Database
from models import Account, InstanceStatus, RuleType, Transaction
from recurrence import InstanceGenerator
from schemas import (
    BudgetIn,
    BudgetRuleIn,
    InstallmentRuleIn,
    OneOffRuleIn,
    RecurringRuleIn,
    parse_rule,
)
from services import ForecastValidationError, InstanceService, NotFoundError, RuleService


async def _open(tmp_path) -> tuple[Database, Settings]:
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'forecast.db'}",
        timezone="Europe/Berlin",
    )
    db = Database(settings.database_url)
    await db.create_all()
    async with db.session_scope() as session:
        session.add(Account(id=1, name="Checking", initial_balance_cents=0))
    return db, settings


def test_parse_rule_dispatches_on_type():
    rule = parse_rule(
        {
            "type": "installment",
            "name": "Sofa",
            "amount_cents": -20_000,
            "start_date": "2025-03-15",
            "installments_count": 6,
        }
    )
    assert isinstance(rule, InstallmentRuleIn)
    assert isinstance(
        parse_rule(
            {"type": "one_off", "name": "Tax", "amount_cents": -1, "start_date": "2025-01-01"}
        ),
        OneOffRuleIn,
    )


def test_parse_rule_rejects_incomplete_variants():
    with pytest.raises(ValidationError):
        parse_rule(
            {
                "type": "installment",
                "name": "Sofa",
                "amount_cents": -20_000,
                "start_date": "2025-03-15",
            }
        )
    with pytest.raises(ValidationError):
        parse_rule(
            {"type": "budget", "name": "Food", "amount_cents": -1, "start_date": "2025-01-01"}
        )
    with pytest.raises(ValidationError):
        RecurringRuleIn(
            name="Gym",
            amount_cents=-3_000,
            start_date=date(2025, 5, 1),
            end_date=date(2025, 4, 1),
        )


def test_delete_keeps_history_and_stops_projections(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            rules = RuleService(db, settings)
            rule = await rules.create(
                RecurringRuleIn(
                    name="Streaming",
                    amount_cents=-1_299,
                    account_id=1,
                    category="Subscriptions",
                    start_date=date(2025, 1, 15),
                )
            )
            generator = InstanceGenerator(db, settings)
            await generator.generate_instances(date(2025, 1, 1), 4)

            instances = InstanceService(db, settings)
            first = (await instances.for_rule(rule.id))[0]
            async with db.session_scope() as session:
                txn = Transaction(
                    account_id=1,
                    date=date(2025, 1, 15),
                    amount_cents=-1_299,
                    currency_code="EUR",
                    category="Subscriptions",
                )
                session.add(txn)
                await session.flush()
                txn_id = txn.id
            await instances.link_transaction(txn_id, first.id)

            removed = await rules.delete(rule.id)
            assert removed == 3

            remaining = await instances.for_rule(rule.id)
            assert [i.status for i in remaining] == [InstanceStatus.realized]
            assert (await rules.get(rule.id)).is_active is False

            # Regeneration does not resurrect deleted projections.
            assert await generator.generate_instances(date(2025, 1, 1), 4) == 0
            assert len(await instances.for_rule(rule.id)) == 1

            with pytest.raises(NotFoundError):
                await rules.delete(999)
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_update_lays_out_schedule_again_but_keeps_overrides(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            rules = RuleService(db, settings)
            rule = await rules.create(
                RecurringRuleIn(name="Rent", amount_cents=-80_000, start_date=date(2025, 1, 1))
            )
            generator = InstanceGenerator(db, settings)
            await generator.generate_instances(date(2025, 1, 1), 3)
            instances = InstanceService(db, settings)
            march = (await instances.for_rule(rule.id))[-1]
            await instances.set_instance_amount(march.id, -85_000)

            await rules.update(
                rule.id,
                RecurringRuleIn(name="Rent", amount_cents=-82_000, start_date=date(2025, 1, 3)),
            )
            await generator.generate_instances(date(2025, 1, 1), 3)

            rows = await instances.for_rule(rule.id)
            assert [(r.date, r.amount_cents) for r in rows] == [
                (date(2025, 1, 3), None),
                (date(2025, 2, 3), None),
                (date(2025, 3, 1), -85_000),
                (date(2025, 3, 3), None),
            ]
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_rule_with_unknown_account_is_rejected(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            with pytest.raises(NotFoundError):
                await RuleService(db, settings).create(
                    OneOffRuleIn(
                        name="Tax",
                        amount_cents=-50_000,
                        account_id=42,
                        start_date=date(2025, 6, 1),
                    )
                )
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_one_budget_per_category(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            rules = RuleService(db, settings)
            first = await rules.upsert_budget(
                BudgetIn(category="Groceries", amount_cents=-40_000, start_date=date(2025, 1, 1))
            )
            second = await rules.upsert_budget(
                BudgetIn(category="Groceries", amount_cents=-45_000)
            )
            assert second.id == first.id
            assert second.amount_cents == -45_000
            assert second.start_date == date(2025, 1, 1)
            assert second.name == "Budget: Groceries"

            # Creating through the generic path upserts as well.
            third = await rules.create(
                BudgetRuleIn(
                    name="Food",
                    category="Groceries",
                    amount_cents=-50_000,
                    start_date=date(2025, 1, 1),
                )
            )
            assert third.id == first.id

            other = await rules.upsert_budget(
                BudgetIn(category="Fun", amount_cents=-10_000, start_date=date(2025, 1, 1))
            )
            with pytest.raises(ForecastValidationError):
                await rules.update(
                    other.id,
                    BudgetRuleIn(
                        name="Fun",
                        category="Groceries",
                        amount_cents=-10_000,
                        start_date=date(2025, 1, 1),
                    ),
                )

            budgets = await rules.list_active(RuleType.budget)
            assert sorted(b.category for b in budgets) == ["Fun", "Groceries"]

            assert await rules.upsert_budget(BudgetIn(category="Fun", amount_cents=0)) is None
            budgets = await rules.list_active(RuleType.budget)
            assert [b.category for b in budgets] == ["Groceries"]
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_update_to_inactive_removes_every_projection(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            rules = RuleService(db, settings)
            rule = await rules.create(
                RecurringRuleIn(name="Phone", amount_cents=-2_000, start_date=date(2025, 1, 10))
            )
            await InstanceGenerator(db, settings).generate_instances(date(2025, 1, 1), 3)
            instances = InstanceService(db, settings)
            first = (await instances.for_rule(rule.id))[0]
            await instances.set_instance_amount(first.id, -4_000)

            await rules.update(
                rule.id,
                RecurringRuleIn(
                    name="Phone",
                    amount_cents=-2_000,
                    start_date=date(2025, 1, 10),
                    is_active=False,
                ),
            )

            assert (await rules.get(rule.id)).is_active is False
            projected = [
                i
                for i in await instances.for_rule(rule.id)
                if i.status == InstanceStatus.projected
            ]
            assert projected == []
        finally:
            await db.dispose()

    asyncio.run(scenario())
