import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

import fx_rates
from config import Settings
from database import Database
from fx_rates import FxQuote, FxRateService, rate_for_day
from models import Account, RuleType, Transaction
from recurrence import InstanceGenerator
from schemas import PayIn30Plan, RepeatMonthlyPlan
from services import ForecastPlanService, InstanceService, NotFoundError


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


async def _transaction(db: Database, amount_cents: int, currency: str) -> int:
    async with db.session_scope() as session:
        txn = Transaction(
            account_id=1,
            date=date(2025, 3, 10),
            amount_cents=amount_cents,
            currency_code=currency,
            category="Electronics",
            description="Headphones",
        )
        session.add(txn)
        await session.flush()
        return txn.id


def _fake_quote(rate: str):
    def fetch(base, quote, on_date, *, timeout):
        return FxQuote(
            provider="frankfurter",
            base=base,
            quote=quote,
            rate=Decimal(rate),
            rate_date=on_date,
            fetched_at=datetime.now(timezone.utc),
        )

    return fetch


def test_pay_in_30_then_repeat_monthly(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            txn_id = await _transaction(db, -12_000, "EUR")
            plans = ForecastPlanService(db, settings, FxRateService(settings))
            instances = InstanceService(db, settings)

            rule = await plans.apply_plan(txn_id, PayIn30Plan())
            assert rule.type == RuleType.one_off
            assert rule.start_date == date(2025, 4, 9)
            assert rule.amount_cents == -12_000
            assert rule.category == "Electronics"
            assert rule.source_transaction_id == txn_id
            rows = await instances.for_rule(rule.id)
            assert [r.date for r in rows] == [date(2025, 4, 9)]
            assert rows[0].note == f"Created from transaction {txn_id}"

            again = await plans.apply_plan(txn_id, PayIn30Plan())
            assert again.id == rule.id
            assert len(await instances.for_rule(rule.id)) == 1

            monthly = await plans.apply_plan(txn_id, RepeatMonthlyPlan(months_ahead=3))
            assert monthly.id == rule.id
            assert monthly.type == RuleType.recurring
            assert monthly.start_date == date(2025, 4, 10)
            assert [r.date for r in await instances.for_rule(rule.id)] == [
                date(2025, 4, 10),
                date(2025, 5, 10),
                date(2025, 6, 10),
            ]

            # Generation picks the rule up without duplicating.
            await InstanceGenerator(db, settings).generate_instances(date(2025, 4, 1), 3)
            assert len(await instances.for_rule(rule.id)) == 3

            with pytest.raises(NotFoundError):
                await plans.apply_plan(999, PayIn30Plan())
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_foreign_currency_is_normalized(tmp_path, monkeypatch):
    monkeypatch.setattr(fx_rates, "_fetch_frankfurter_quote", _fake_quote("0.9"))

    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            txn_id = await _transaction(db, -10_000, "USD")
            rule = await ForecastPlanService(
                db, settings, FxRateService(settings)
            ).apply_plan(txn_id, PayIn30Plan())
            assert rule.amount_cents == -9_000
            assert rule.currency_code == "EUR"
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_fx_failure_falls_back_to_native_amount(tmp_path, monkeypatch):
    def unavailable(base, quote, on_date, *, timeout):
        raise RuntimeError("provider down")

    monkeypatch.setattr(fx_rates, "_fetch_frankfurter_quote", unavailable)

    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            txn_id = await _transaction(db, -10_000, "USD")
            rule = await ForecastPlanService(
                db, settings, FxRateService(settings)
            ).apply_plan(txn_id, PayIn30Plan())
            assert rule.amount_cents == -10_000
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_rate_for_day_walks_back_over_weekends():
    rates = {"2025-03-07": {"EUR": 0.92}}
    found = rate_for_day(rates, date(2025, 3, 9), "EUR")
    assert found == (date(2025, 3, 7), Decimal("0.92"))
    assert rate_for_day({}, date(2025, 3, 9), "EUR") is None
