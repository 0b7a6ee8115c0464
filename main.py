import math
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import SessionLocal
from models import Account, AllocationRecord, AllocationRule, IncomePlan
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AllocationAmountIn,
    AllocationRecordIn,
    AllocationRuleIn,
    IncomePlanIn,
    IncomePlanMatchIn,
    RuleReorderIn,
)
from services import (
    AccountService,
    AllocationConflict,
    AllocationRuleService,
    AllocationService,
    ForecastService,
    IncomePlanService,
    NotFound,
    UNKNOWN_ACCOUNT,
)


app = FastAPI(title="Income Allocation Planner")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_csrf(request: Request) -> None:
    if not validate_csrf_token(request.headers.get(CSRF_HEADER)):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AllocationConflict):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def account_to_dict(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type,
        "bank": account.bank,
        "number": account.number,
    }


def rule_to_dict(rule: AllocationRule) -> dict[str, object]:
    return {
        "id": rule.id,
        "account_id": rule.account_id,
        "category": rule.category,
        "rule_type": rule.rule_type.value,
        "value": rule.value,
        "priority": rule.priority,
        "active": rule.active,
    }


def plan_to_dict(plan: IncomePlan) -> dict[str, object]:
    return {
        "id": plan.id,
        "expected_date": plan.expected_date,
        "expected_amount": plan.expected_amount,
        "label": plan.label,
        "recurrence": plan.recurrence,
        "notes": plan.notes,
        "status": plan.status.value,
        "actual_amount": plan.actual_amount,
        "matched_transaction_id": plan.matched_transaction_id,
        "date_received": plan.date_received,
    }


def record_to_dict(
    record: AllocationRecord, names: Optional[dict[int, str]] = None
) -> dict[str, object]:
    data: dict[str, object] = {
        "id": record.id,
        "income_plan_id": record.income_plan_id,
        "account_id": record.account_id,
        "rule_id": record.rule_id,
        "amount": record.amount,
        "category": record.category,
        "is_forecast": record.is_forecast,
        "status": record.status.value,
        "matched_amount": record.matched_amount,
        "created_at": record.created_at.isoformat(),
    }
    if names is not None:
        data["account_name"] = names.get(record.account_id, UNKNOWN_ACCOUNT)
    return data


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/csrf-token")
def csrf_token():
    return {"token": generate_csrf_token(), "header": CSRF_HEADER}


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [account_to_dict(a) for a in AccountService(db).list_all()]


@app.post("/api/accounts", status_code=201, dependencies=[Depends(require_csrf)])
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_to_dict(account)


@app.get("/api/rules")
def list_rules(db: Session = Depends(get_db)):
    return [rule_to_dict(r) for r in AllocationRuleService(db).list_all()]


@app.post("/api/rules", status_code=201, dependencies=[Depends(require_csrf)])
def create_rule(data: AllocationRuleIn, db: Session = Depends(get_db)):
    try:
        rule = AllocationRuleService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return rule_to_dict(rule)


@app.post("/api/rules/reorder", dependencies=[Depends(require_csrf)])
def reorder_rules(data: RuleReorderIn, db: Session = Depends(get_db)):
    try:
        rules = AllocationRuleService(db).reorder(data.rule_ids)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [rule_to_dict(r) for r in rules]


@app.put("/api/rules/{rule_id}", dependencies=[Depends(require_csrf)])
def update_rule(rule_id: int, data: AllocationRuleIn, db: Session = Depends(get_db)):
    try:
        rule = AllocationRuleService(db).update(rule_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return rule_to_dict(rule)


@app.delete("/api/rules/{rule_id}", dependencies=[Depends(require_csrf)])
def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        AllocationRuleService(db).delete(rule_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/income-plans")
def list_income_plans(db: Session = Depends(get_db)):
    return [plan_to_dict(p) for p in IncomePlanService(db).list_all()]


@app.get("/api/income-plans/summary")
def income_summary(db: Session = Depends(get_db)):
    summary = IncomePlanService(db).summary()
    return {
        "this_month": summary["this_month"],
        "upcoming": [plan_to_dict(p) for p in summary["upcoming"]],
    }


@app.post("/api/income-plans", status_code=201, dependencies=[Depends(require_csrf)])
def create_income_plan(data: IncomePlanIn, db: Session = Depends(get_db)):
    plan = IncomePlanService(db).create(data)
    return plan_to_dict(plan)


@app.put("/api/income-plans/{plan_id}", dependencies=[Depends(require_csrf)])
def update_income_plan(plan_id: int, data: IncomePlanIn, db: Session = Depends(get_db)):
    try:
        plan = IncomePlanService(db).update(plan_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return plan_to_dict(plan)


@app.delete("/api/income-plans/{plan_id}", dependencies=[Depends(require_csrf)])
def delete_income_plan(plan_id: int, db: Session = Depends(get_db)):
    try:
        IncomePlanService(db).delete(plan_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/income-plans/{plan_id}/match", dependencies=[Depends(require_csrf)])
def match_income_plan(
    plan_id: int, data: IncomePlanMatchIn, db: Session = Depends(get_db)
):
    try:
        plan = IncomePlanService(db).match(plan_id, data)
    except (ValueError, AllocationConflict) as exc:
        raise http_error(exc) from exc
    return plan_to_dict(plan)


@app.post("/api/income-plans/{plan_id}/unmatch", dependencies=[Depends(require_csrf)])
def unmatch_income_plan(
    plan_id: int, rerun: bool = False, db: Session = Depends(get_db)
):
    try:
        plan = IncomePlanService(db).unmatch(plan_id, rerun=rerun)
    except (ValueError, AllocationConflict) as exc:
        raise http_error(exc) from exc
    return plan_to_dict(plan)


@app.post("/api/income-plans/{plan_id}/missed", dependencies=[Depends(require_csrf)])
def mark_income_plan_missed(plan_id: int, db: Session = Depends(get_db)):
    try:
        plan = IncomePlanService(db).mark_missed(plan_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return plan_to_dict(plan)


@app.post("/api/income-plans/{plan_id}/planned", dependencies=[Depends(require_csrf)])
def mark_income_plan_planned(plan_id: int, db: Session = Depends(get_db)):
    try:
        plan = IncomePlanService(db).mark_planned(plan_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return plan_to_dict(plan)


@app.post(
    "/api/income-plans/{plan_id}/allocations/run",
    dependencies=[Depends(require_csrf)],
)
def run_plan_allocations(plan_id: int, db: Session = Depends(get_db)):
    try:
        lines = AllocationService(db).run_for_plan(plan_id)
    except (ValueError, AllocationConflict) as exc:
        raise http_error(exc) from exc
    return [line.as_dict() for line in lines]


@app.get("/api/income-plans/{plan_id}/allocations")
def plan_allocations(plan_id: int, db: Session = Depends(get_db)):
    try:
        records = AllocationService(db).records_for_plan(plan_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    names = AccountService(db).names()
    return [record_to_dict(r, names) for r in records]


@app.post(
    "/api/income-plans/{plan_id}/allocations",
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def add_plan_allocation(
    plan_id: int, data: AllocationRecordIn, db: Session = Depends(get_db)
):
    try:
        record = AllocationService(db).add_record(plan_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return record_to_dict(record)


@app.get("/api/income-plans/{plan_id}/checklist")
def plan_checklist(plan_id: int, db: Session = Depends(get_db)):
    try:
        return AllocationService(db).checklist(plan_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/allocations/preview")
def preview_allocations(amount: float, db: Session = Depends(get_db)):
    if not math.isfinite(amount):
        raise HTTPException(status_code=400, detail="amount must be a finite number")
    return AllocationService(db).preview(amount)


@app.get("/api/allocations/active")
def active_distributions(db: Session = Depends(get_db)):
    items = AllocationService(db).active_distributions()
    return [dict(item, plan=plan_to_dict(item["plan"])) for item in items]


@app.patch("/api/allocations/{record_id}", dependencies=[Depends(require_csrf)])
def update_allocation_amount(
    record_id: int, data: AllocationAmountIn, db: Session = Depends(get_db)
):
    try:
        record = AllocationService(db).update_amount(record_id, data.amount)
    except ValueError as exc:
        raise http_error(exc) from exc
    return record_to_dict(record)


@app.delete("/api/allocations/{record_id}", dependencies=[Depends(require_csrf)])
def delete_allocation(record_id: int, db: Session = Depends(get_db)):
    try:
        AllocationService(db).delete_record(record_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post(
    "/api/allocations/{record_id}/complete", dependencies=[Depends(require_csrf)]
)
def complete_allocation(record_id: int, db: Session = Depends(get_db)):
    try:
        record = AllocationService(db).mark_complete(record_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return record_to_dict(record)


@app.post("/api/allocations/{record_id}/reopen", dependencies=[Depends(require_csrf)])
def reopen_allocation(record_id: int, db: Session = Depends(get_db)):
    try:
        record = AllocationService(db).reopen(record_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return record_to_dict(record)


@app.get("/api/forecast")
def monthly_forecast(months: Optional[int] = None, db: Session = Depends(get_db)):
    if months is not None and not 1 <= months <= 24:
        raise HTTPException(status_code=400, detail="months must be between 1 and 24")
    return ForecastService(db).monthly_forecast(months)
