import logging
from dataclasses import asdict
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from config import get_settings
from database import Database
from fx_rates import FxRateService
from models import RuleType
from recurrence import InstanceGenerator
from reports import ForecastReportService
from schemas import (
    BudgetIn,
    CycleIn,
    CycleOut,
    ForecastInstanceOut,
    ForecastPlanIn,
    ForecastRuleIn,
    ForecastRuleOut,
    GenerateIn,
    InstanceAmountIn,
    InstanceStatusIn,
    LinkIn,
)
from services import (
    CycleService,
    ForecastPlanService,
    InstanceService,
    NotFoundError,
    RuleService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cash-flow Forecast")


@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    app.state.db = Database(settings.database_url)
    logger.info(f"startup: database={settings.database_url}")


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.db.dispose()


def get_database(request: Request) -> Database:
    return request.app.state.db


@app.post("/forecast/generate")
async def generate_forecast(payload: GenerateIn, db: Database = Depends(get_database)):
    generator = InstanceGenerator(db, get_settings())
    inserted = await generator.generate_instances(
        payload.start_date, payload.horizon_months
    )
    return {"inserted": inserted}


@app.get("/forecast/rules")
async def list_rules(
    rule_type: Optional[RuleType] = None, db: Database = Depends(get_database)
):
    rules = await RuleService(db, get_settings()).list_active(rule_type)
    return [ForecastRuleOut.model_validate(r) for r in rules]


@app.get("/forecast/{year}")
async def forecast_year(year: int, db: Database = Depends(get_database)):
    if not 1900 <= year <= 9998:
        raise HTTPException(status_code=400, detail="Year out of range")
    report = await ForecastReportService(db, get_settings()).build_year_report(year)
    return jsonable_encoder(asdict(report))


@app.post("/forecast/rules", response_model=ForecastRuleOut)
async def create_rule(payload: ForecastRuleIn, db: Database = Depends(get_database)):
    try:
        rule = await RuleService(db, get_settings()).create(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ForecastRuleOut.model_validate(rule)


@app.put("/forecast/rules/{rule_id}", response_model=ForecastRuleOut)
async def update_rule(
    rule_id: int, payload: ForecastRuleIn, db: Database = Depends(get_database)
):
    try:
        rule = await RuleService(db, get_settings()).update(rule_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ForecastRuleOut.model_validate(rule)


@app.delete("/forecast/rules/{rule_id}")
async def delete_rule(rule_id: int, db: Database = Depends(get_database)):
    try:
        removed = await RuleService(db, get_settings()).delete(rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": rule_id, "projections_removed": removed}


@app.post("/forecast/budgets")
async def upsert_budget(payload: BudgetIn, db: Database = Depends(get_database)):
    try:
        rule = await RuleService(db, get_settings()).upsert_budget(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if rule is None:
        return {"category": payload.category, "removed": True}
    return ForecastRuleOut.model_validate(rule)


@app.get("/forecast/rules/{rule_id}/instances")
async def rule_instances(rule_id: int, db: Database = Depends(get_database)):
    try:
        await RuleService(db, get_settings()).get(rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    instances = await InstanceService(db, get_settings()).for_rule(rule_id)
    return [ForecastInstanceOut.model_validate(i) for i in instances]


@app.post("/forecast/instances/{instance_id}/link")
async def link_instance(
    instance_id: int, payload: LinkIn, db: Database = Depends(get_database)
):
    try:
        result = await InstanceService(db, get_settings()).link_transaction(
            payload.transaction_id, instance_id
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(result)


@app.post("/forecast/instances/{instance_id}/amount", response_model=ForecastInstanceOut)
async def set_instance_amount(
    instance_id: int, payload: InstanceAmountIn, db: Database = Depends(get_database)
):
    try:
        instance = await InstanceService(db, get_settings()).set_instance_amount(
            instance_id, payload.amount_cents
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ForecastInstanceOut.model_validate(instance)


@app.post("/forecast/instances/{instance_id}/status", response_model=ForecastInstanceOut)
async def set_instance_status(
    instance_id: int, payload: InstanceStatusIn, db: Database = Depends(get_database)
):
    try:
        instance = await InstanceService(db, get_settings()).set_instance_status(
            instance_id, payload.status
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ForecastInstanceOut.model_validate(instance)


@app.get("/forecast/transactions/{transaction_id}/candidates")
async def link_candidates(
    transaction_id: int, limit: int = 20, db: Database = Depends(get_database)
):
    try:
        candidates = await InstanceService(
            db, get_settings()
        ).candidates_for_transaction(transaction_id, limit=max(1, min(limit, 100)))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return jsonable_encoder([asdict(c) for c in candidates])


@app.post("/transactions/{transaction_id}/forecast-plan", response_model=ForecastRuleOut)
async def apply_forecast_plan(
    transaction_id: int, payload: ForecastPlanIn, db: Database = Depends(get_database)
):
    settings = get_settings()
    service = ForecastPlanService(db, settings, FxRateService(settings))
    try:
        rule = await service.apply_plan(transaction_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ForecastRuleOut.model_validate(rule)


@app.get("/cycles")
async def list_cycles(db: Database = Depends(get_database)):
    cycles = await CycleService(db).list_cycles()
    return [CycleOut.model_validate(c) for c in cycles]


@app.get("/cycles/{key}/default", response_model=CycleOut)
async def default_cycle(key: str):
    try:
        cycle = CycleService.default_cycle(key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CycleOut.model_validate(cycle)


@app.put("/cycles/{key}", response_model=CycleOut)
async def upsert_cycle(key: str, payload: CycleIn, db: Database = Depends(get_database)):
    try:
        cycle = await CycleService(db).upsert_cycle(key, payload)
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CycleOut.model_validate(cycle)


@app.delete("/cycles/{key}")
async def delete_cycle(key: str, db: Database = Depends(get_database)):
    try:
        await CycleService(db).delete_cycle(key)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"deleted": key}


def main() -> None:
    uvicorn.run("main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
