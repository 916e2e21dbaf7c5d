from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from models import ForecastRule, InstanceStatus, RuleFrequency, RuleType


class _RuleBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str = Field(..., min_length=1, max_length=200)
    amount_cents: int
    currency_code: str = Field(default="EUR", min_length=3, max_length=3)
    account_id: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=100)
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True
    source_transaction_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_dates(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class RecurringRuleIn(_RuleBase):
    type: Literal["recurring"] = "recurring"
    frequency: RuleFrequency = RuleFrequency.monthly
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)


class OneOffRuleIn(_RuleBase):
    type: Literal["one_off"] = "one_off"


class InstallmentRuleIn(_RuleBase):
    type: Literal["installment"] = "installment"
    installments_count: int = Field(..., gt=0, le=600)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)


class BudgetRuleIn(_RuleBase):
    type: Literal["budget"] = "budget"
    category: str = Field(..., min_length=1, max_length=100)


ForecastRuleIn = Annotated[
    Union[RecurringRuleIn, OneOffRuleIn, InstallmentRuleIn, BudgetRuleIn],
    Field(discriminator="type"),
]

_rule_adapter: TypeAdapter[ForecastRuleIn] = TypeAdapter(ForecastRuleIn)


def parse_rule(payload: dict) -> ForecastRuleIn:
    return _rule_adapter.validate_python(payload)


def rule_from_row(row: ForecastRule) -> ForecastRuleIn:
    """Validate a stored rule into its typed variant.

    Raises ``pydantic.ValidationError`` for rows whose configuration does not
    fit their type (an installment without a count, for example).
    """
    values = {
        "type": row.type.value,
        "name": row.name,
        "amount_cents": row.amount_cents,
        "currency_code": row.currency_code,
        "account_id": row.account_id,
        "category": row.category,
        "start_date": row.start_date,
        "end_date": row.end_date,
        "is_active": row.is_active,
        "source_transaction_id": row.source_transaction_id,
        "frequency": row.frequency,
        "day_of_month": row.day_of_month,
        "installments_count": row.installments_count,
    }
    return parse_rule({k: v for k, v in values.items() if v is not None})


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int
    start_date: Optional[date] = None


class GenerateIn(BaseModel):
    start_date: date
    horizon_months: Optional[int] = Field(default=None, gt=0, le=120)


class LinkIn(BaseModel):
    transaction_id: int


class InstanceAmountIn(BaseModel):
    amount_cents: Optional[int]


class InstanceStatusIn(BaseModel):
    status: InstanceStatus


class CycleIn(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("Cycle end must not be before its start")
        return self


class PayIn30Plan(BaseModel):
    kind: Literal["pay_in_30"] = "pay_in_30"


class RepeatMonthlyPlan(BaseModel):
    kind: Literal["repeat_monthly"] = "repeat_monthly"
    months_ahead: int = Field(default=12, ge=1, le=120)


ForecastPlanIn = Annotated[
    Union[PayIn30Plan, RepeatMonthlyPlan], Field(discriminator="kind")
]


class ForecastRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: RuleType
    amount_cents: int
    currency_code: str
    account_id: Optional[int]
    category: Optional[str]
    start_date: date
    end_date: Optional[date]
    frequency: Optional[RuleFrequency]
    day_of_month: Optional[int]
    installments_count: Optional[int]
    is_active: bool
    source_transaction_id: Optional[int]


class ForecastInstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rule_id: int
    date: date
    amount_cents: Optional[int]
    status: InstanceStatus
    transaction_id: Optional[int]
    split_from_id: Optional[int]
    note: Optional[str]


class CycleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    start_date: date
    end_date: date
