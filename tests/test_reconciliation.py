import asyncio
from datetime import date

import pytest

from config import Settings
from database import Database
from models import Account, ForecastRule, InstanceStatus, RuleType, Transaction
from recurrence import InstanceGenerator
from services import ForecastValidationError, InstanceService, NotFoundError


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


async def _bill(db: Database, settings: Settings, amount_cents: int) -> int:
    """One-off bill due 2025-02-01; returns its projected instance id."""
    async with db.session_scope() as session:
        rule = ForecastRule(
            name="Electricity",
            type=RuleType.one_off,
            amount_cents=amount_cents,
            currency_code="EUR",
            account_id=1,
            category="Utilities",
            start_date=date(2025, 2, 1),
        )
        session.add(rule)
        await session.flush()
        rule_id = rule.id
    await InstanceGenerator(db, settings).generate_instances(date(2025, 1, 1), 3)
    instances = await InstanceService(db, settings).for_rule(rule_id)
    assert len(instances) == 1
    return instances[0].id


async def _transaction(db: Database, amount_cents: int, day: date = date(2025, 2, 3)) -> int:
    async with db.session_scope() as session:
        txn = Transaction(
            account_id=1,
            date=day,
            amount_cents=amount_cents,
            currency_code="EUR",
            category="Utilities",
            description="Power company",
        )
        session.add(txn)
        await session.flush()
        return txn.id


def test_partial_payment_leaves_remainder(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            txn_id = await _transaction(db, -3_000)
            service = InstanceService(db, settings)

            result = await service.link_transaction(txn_id, instance_id)

            assert result.full_match is False
            assert result.remainder_cents == -2_000
            settled = await service.get(instance_id)
            assert settled.status == InstanceStatus.realized
            assert settled.transaction_id == txn_id
            assert settled.amount_cents == -3_000

            remainder = await service.get(result.remainder_id)
            assert remainder.status == InstanceStatus.projected
            assert remainder.amount_cents == -2_000
            assert remainder.date == settled.date
            assert remainder.rule_id == settled.rule_id
            assert remainder.split_from_id == instance_id
            assert remainder.transaction_id is None

            # Regeneration does not re-create the settled slot.
            await InstanceGenerator(db, settings).generate_instances(date(2025, 1, 1), 3)
            assert len(await service.for_rule(settled.rule_id)) == 2
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_payment_within_tolerance_is_a_full_match(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            txn_id = await _transaction(db, -4_997)
            service = InstanceService(db, settings)

            result = await service.link_transaction(txn_id, instance_id)

            assert result.full_match is True
            assert result.remainder_id is None
            settled = await service.get(instance_id)
            assert settled.amount_cents == -4_997
            assert len(await service.for_rule(settled.rule_id)) == 1
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_payment_just_outside_tolerance_splits(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            txn_id = await _transaction(db, -4_990)
            result = await InstanceService(db, settings).link_transaction(
                txn_id, instance_id
            )
            assert result.full_match is False
            assert result.remainder_cents == -10
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_overpayment_settles_in_full(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            txn_id = await _transaction(db, -6_000)
            service = InstanceService(db, settings)
            result = await service.link_transaction(txn_id, instance_id)
            assert result.full_match is True
            assert (await service.get(instance_id)).amount_cents == -6_000
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_missing_transaction_leaves_instance_untouched(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            service = InstanceService(db, settings)

            with pytest.raises(NotFoundError):
                await service.link_transaction(999, instance_id)

            instance = await service.get(instance_id)
            assert instance.status == InstanceStatus.projected
            assert instance.transaction_id is None
            assert instance.amount_cents is None
            assert len(await service.for_rule(instance.rule_id)) == 1

            txn_id = await _transaction(db, -5_000)
            with pytest.raises(NotFoundError):
                await service.link_transaction(txn_id, 999)
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_link_rejects_invalid_pairs(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            service = InstanceService(db, settings)

            refund_id = await _transaction(db, 5_000)
            with pytest.raises(ForecastValidationError):
                await service.link_transaction(refund_id, instance_id)

            txn_id = await _transaction(db, -3_000)
            result = await service.link_transaction(txn_id, instance_id)

            # Settled instances cannot be linked again.
            other_id = await _transaction(db, -2_000)
            with pytest.raises(ForecastValidationError):
                await service.link_transaction(other_id, instance_id)

            # Nor can one transaction settle two instances.
            with pytest.raises(ForecastValidationError):
                await service.link_transaction(txn_id, result.remainder_id)

            second = await service.link_transaction(other_id, result.remainder_id)
            assert second.full_match is True
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_amount_override_and_reset(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            service = InstanceService(db, settings)

            overridden = await service.set_instance_amount(instance_id, -7_500)
            assert overridden.amount_cents == -7_500
            reset = await service.set_instance_amount(instance_id, None)
            assert reset.amount_cents is None

            txn_id = await _transaction(db, -5_000)
            await service.link_transaction(txn_id, instance_id)
            with pytest.raises(ForecastValidationError):
                await service.set_instance_amount(instance_id, -1_000)
            with pytest.raises(NotFoundError):
                await service.set_instance_amount(999, -1_000)
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_status_transitions(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            instance_id = await _bill(db, settings, -5_000)
            service = InstanceService(db, settings)

            skipped = await service.set_instance_status(instance_id, "skipped")
            assert skipped.status == InstanceStatus.skipped

            realized = await service.set_instance_status(
                instance_id, InstanceStatus.realized
            )
            assert realized.status == InstanceStatus.realized
            # Manual realization pins the template amount.
            assert realized.amount_cents == -5_000

            txn_id = await _transaction(db, -5_000)
            reopened = await service.set_instance_status(instance_id, "projected")
            await service.link_transaction(txn_id, instance_id)
            unlinked = await service.set_instance_status(instance_id, "projected")
            assert reopened.transaction_id is None
            assert unlinked.transaction_id is None
            assert unlinked.status == InstanceStatus.projected

            with pytest.raises(ValueError):
                await service.set_instance_status(instance_id, "cancelled")
        finally:
            await db.dispose()

    asyncio.run(scenario())


def test_candidates_sorted_by_date_distance(tmp_path):
    async def scenario():
        db, settings = await _open(tmp_path)
        try:
            async with db.session_scope() as session:
                session.add_all(
                    [
                        ForecastRule(
                            name="Rent",
                            type=RuleType.one_off,
                            amount_cents=-80_000,
                            currency_code="EUR",
                            start_date=date(2025, 3, 1),
                        ),
                        ForecastRule(
                            name="Insurance",
                            type=RuleType.one_off,
                            amount_cents=-12_000,
                            currency_code="EUR",
                            start_date=date(2025, 2, 5),
                        ),
                        ForecastRule(
                            name="Salary",
                            type=RuleType.one_off,
                            amount_cents=300_000,
                            currency_code="EUR",
                            start_date=date(2025, 2, 4),
                        ),
                    ]
                )
            await InstanceGenerator(db, settings).generate_instances(date(2025, 1, 1), 3)
            txn_id = await _transaction(db, -12_000, day=date(2025, 2, 4))

            candidates = await InstanceService(db, settings).candidates_for_transaction(
                txn_id
            )
            assert [c.rule_name for c in candidates] == ["Insurance", "Rent"]
            assert candidates[0].days_apart == 1

            with pytest.raises(NotFoundError):
                await InstanceService(db, settings).candidates_for_transaction(999)
        finally:
            await db.dispose()

    asyncio.run(scenario())
