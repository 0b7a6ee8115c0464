from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from allocation import (
    AllocationLine,
    allocate,
    round_cents,
    round_whole,
    total_allocated,
)
from config import get_settings
from models import (
    Account,
    AllocationCategory,
    AllocationRecord,
    AllocationRule,
    AllocationStatus,
    IncomePlan,
    IncomePlanStatus,
)
from periods import local_today, month_key, upcoming_month_keys
from schemas import (
    AccountIn,
    AllocationRecordIn,
    AllocationRuleIn,
    IncomePlanIn,
    IncomePlanMatchIn,
)

logger = logging.getLogger(__name__)

FORECAST_BUCKETS = tuple(
    c.value for c in AllocationCategory if c != AllocationCategory.other
)
UNKNOWN_ACCOUNT = "Unknown"


class NotFound(ValueError):
    pass


class PlanNotFound(NotFound):
    pass


class RuleNotFound(NotFound):
    pass


class AccountNotFound(NotFound):
    pass


class AllocationRecordNotFound(NotFound):
    pass


class AllocationLocked(ValueError):
    pass


class AllocationConflict(RuntimeError):
    pass


def get_current_user_id() -> int:
    return 1


def replace_allocation_records(
    session: Session,
    plan: IncomePlan,
    lines: Iterable[AllocationLine],
    is_forecast: bool,
) -> list[AllocationRecord]:
    """
    Swap the plan's allocation records for ``lines`` inside the session's
    transaction. The caller commits. ``allocations_version`` is bumped with a
    compare-and-set so a concurrent run on the same plan fails instead of
    interleaving its records with ours.
    """
    version = plan.allocations_version
    bumped = session.execute(
        update(IncomePlan)
        .where(IncomePlan.id == plan.id, IncomePlan.allocations_version == version)
        .values(allocations_version=version + 1, allocations_customized=False)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount != 1:
        raise AllocationConflict(
            f"Allocations for plan {plan.id} were replaced concurrently"
        )
    set_committed_value(plan, "allocations_version", version + 1)
    set_committed_value(plan, "allocations_customized", False)

    session.execute(
        delete(AllocationRecord).where(AllocationRecord.income_plan_id == plan.id)
    )

    records = [
        AllocationRecord(
            user_id=plan.user_id,
            income_plan_id=plan.id,
            account_id=line.account_id,
            rule_id=line.rule_id,
            amount=line.amount,
            category=line.category,
            is_forecast=is_forecast,
            status=AllocationStatus.pending,
            matched_amount=0,
        )
        for line in lines
    ]
    session.add_all(records)
    session.flush()
    return records


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise AccountNotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValueError("Account name cannot be empty")
        account = Account(
            user_id=self.user_id,
            name=name,
            type=data.type.strip() or "checking",
            bank=data.bank.strip(),
            number=data.number.strip() if data.number else None,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def names(self) -> dict[int, str]:
        rows = self.session.execute(
            select(Account.id, Account.name).where(Account.user_id == self.user_id)
        ).all()
        return {row.id: row.name for row in rows}


class AllocationRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[AllocationRule]:
        stmt = (
            select(AllocationRule)
            .where(AllocationRule.user_id == self.user_id)
            .order_by(AllocationRule.priority.asc(), AllocationRule.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> AllocationRule:
        rule = self.session.get(AllocationRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise RuleNotFound("Rule not found")
        return rule

    def create(self, data: AllocationRuleIn) -> AllocationRule:
        AccountService(self.session, self.user_id).get(data.account_id)
        rule = AllocationRule(
            user_id=self.user_id,
            account_id=data.account_id,
            category=data.category.strip(),
            rule_type=data.rule_type,
            value=data.value,
            priority=data.priority,
            active=data.active,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: AllocationRuleIn) -> AllocationRule:
        rule = self.get(rule_id)
        AccountService(self.session, self.user_id).get(data.account_id)

        rule.account_id = data.account_id
        rule.category = data.category.strip()
        rule.rule_type = data.rule_type
        rule.value = data.value
        rule.priority = data.priority
        rule.active = data.active

        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.execute(
            delete(AllocationRecord).where(
                AllocationRecord.user_id == self.user_id,
                AllocationRecord.rule_id == rule.id,
            )
        )
        self.session.delete(rule)
        self.session.commit()

    def reorder(self, rule_ids: list[int]) -> list[AllocationRule]:
        if len(set(rule_ids)) != len(rule_ids):
            raise ValueError("Duplicate rule ids in reorder request")
        rules = [self.get(rule_id) for rule_id in rule_ids]
        for position, rule in enumerate(rules):
            rule.priority = position
        self.session.commit()
        return self.list_all()


class IncomePlanService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[IncomePlan]:
        stmt = (
            select(IncomePlan)
            .where(IncomePlan.user_id == self.user_id)
            .order_by(IncomePlan.expected_date.desc(), IncomePlan.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, plan_id: int) -> IncomePlan:
        plan = self.session.get(IncomePlan, plan_id)
        # a foreign plan must look exactly like a missing one
        if not plan or plan.user_id != self.user_id:
            raise PlanNotFound("Plan not found")
        return plan

    def create(self, data: IncomePlanIn) -> IncomePlan:
        plan = IncomePlan(
            user_id=self.user_id,
            expected_date=data.expected_date.isoformat(),
            expected_amount=data.expected_amount,
            label=data.label.strip(),
            recurrence=data.recurrence.strip(),
            notes=data.notes,
            status=IncomePlanStatus.planned,
        )
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def update(self, plan_id: int, data: IncomePlanIn) -> IncomePlan:
        plan = self.get(plan_id)
        plan.expected_date = data.expected_date.isoformat()
        plan.expected_amount = data.expected_amount
        plan.label = data.label.strip()
        plan.recurrence = data.recurrence.strip()
        plan.notes = data.notes
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def delete(self, plan_id: int) -> None:
        plan = self.get(plan_id)
        self._delete_records(plan)
        self.session.delete(plan)
        self.session.commit()

    def match(self, plan_id: int, data: IncomePlanMatchIn) -> IncomePlan:
        plan = self.get(plan_id)
        plan.status = IncomePlanStatus.matched
        plan.actual_amount = data.actual_amount
        plan.matched_transaction_id = data.transaction_id
        plan.date_received = (
            data.date_received.isoformat() if data.date_received else None
        )
        self._set_forecast_flag(plan, False)
        self.session.commit()
        logger.info(
            f"income_plan_matched: plan_id={plan.id} actual={plan.actual_amount}"
        )
        if data.rerun:
            AllocationService(self.session, self.user_id).run_for_plan(plan.id)
        return plan

    def unmatch(self, plan_id: int, rerun: bool = False) -> IncomePlan:
        plan = self.get(plan_id)
        plan.status = IncomePlanStatus.planned
        plan.actual_amount = None
        plan.matched_transaction_id = None
        plan.date_received = None
        self._set_forecast_flag(plan, True)
        self.session.commit()
        logger.info(f"income_plan_unmatched: plan_id={plan.id}")
        if rerun:
            AllocationService(self.session, self.user_id).run_for_plan(plan.id)
        return plan

    def mark_missed(self, plan_id: int) -> IncomePlan:
        plan = self.get(plan_id)
        plan.status = IncomePlanStatus.missed
        removed = self._delete_records(plan)
        self.session.commit()
        logger.info(f"income_plan_missed: plan_id={plan.id} records_removed={removed}")
        return plan

    def mark_planned(self, plan_id: int) -> IncomePlan:
        plan = self.get(plan_id)
        plan.status = IncomePlanStatus.planned
        self.session.commit()
        return plan

    def summary(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        current = month_key(today)
        plans = self.list_all()

        this_month = [p for p in plans if p.expected_date.startswith(current)]
        planned = [p for p in this_month if p.status == IncomePlanStatus.planned]
        matched = [p for p in this_month if p.status == IncomePlanStatus.matched]
        missed = [p for p in this_month if p.status == IncomePlanStatus.missed]

        today_iso = today.isoformat()
        upcoming = sorted(
            (
                p
                for p in plans
                if p.status == IncomePlanStatus.planned
                and p.expected_date >= today_iso
            ),
            key=lambda p: p.expected_date,
        )[:5]

        return {
            "this_month": {
                "planned_count": len(planned),
                "matched_count": len(matched),
                "missed_count": len(missed),
                "total_planned": sum(p.expected_amount for p in planned),
                "total_matched": sum(
                    p.actual_amount
                    if p.actual_amount is not None
                    else p.expected_amount
                    for p in matched
                ),
                "total_missed": sum(p.expected_amount for p in missed),
            },
            "upcoming": upcoming,
        }

    def _set_forecast_flag(self, plan: IncomePlan, is_forecast: bool) -> None:
        self.session.execute(
            update(AllocationRecord)
            .where(AllocationRecord.income_plan_id == plan.id)
            .values(is_forecast=is_forecast)
            .execution_options(synchronize_session="fetch")
        )

    def _delete_records(self, plan: IncomePlan) -> int:
        result = self.session.execute(
            delete(AllocationRecord).where(AllocationRecord.income_plan_id == plan.id)
        )
        return result.rowcount or 0


class AllocationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _rules(self) -> list[AllocationRule]:
        return AllocationRuleService(self.session, self.user_id).list_all()

    def _plan(self, plan_id: int) -> IncomePlan:
        return IncomePlanService(self.session, self.user_id).get(plan_id)

    def _record(self, record_id: int) -> AllocationRecord:
        record = self.session.get(AllocationRecord, record_id)
        if not record or record.user_id != self.user_id:
            raise AllocationRecordNotFound("Allocation record not found")
        return record

    def run_for_plan(self, plan_id: int) -> list[AllocationLine]:
        plan = self._plan(plan_id)
        rules = self._rules()

        amount = plan.authoritative_amount
        is_forecast = plan.is_forecast
        lines = allocate(amount, rules)

        try:
            replace_allocation_records(self.session, plan, lines, is_forecast)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"allocation_run: plan_id={plan.id} amount={amount} "
            f"lines={len(lines)} forecast={is_forecast}"
        )
        return lines

    def preview(self, amount: float) -> dict[str, object]:
        rules = self._rules()
        names = AccountService(self.session, self.user_id).names()
        rules_by_id = {rule.id: rule for rule in rules}

        lines = allocate(amount, rules)
        allocations = []
        for line in lines:
            rule = rules_by_id.get(line.rule_id)
            allocations.append(
                {
                    "rule_id": line.rule_id,
                    "account_id": line.account_id,
                    "account_name": names.get(line.account_id, UNKNOWN_ACCOUNT),
                    "category": line.category,
                    "rule_type": rule.rule_type.value if rule else "fixed",
                    "rule_value": rule.value if rule else 0,
                    "amount": line.amount,
                }
            )

        return {
            "allocations": allocations,
            "unallocated": max(0.0, round_cents(amount - total_allocated(lines))),
        }

    def records_for_plan(self, plan_id: int) -> list[AllocationRecord]:
        plan = self._plan(plan_id)
        stmt = (
            select(AllocationRecord)
            .where(AllocationRecord.income_plan_id == plan.id)
            .order_by(AllocationRecord.id)
        )
        return self.session.scalars(stmt).all()

    def update_amount(self, record_id: int, amount: float) -> AllocationRecord:
        record = self._record(record_id)
        if not record.is_forecast:
            raise AllocationLocked("Only forecast allocations can be edited")
        if self._fully_distributed(record.income_plan_id):
            raise AllocationLocked("Cannot edit a fully distributed income plan")
        record.amount = max(0.0, amount)
        self._mark_customized(record.income_plan_id)
        self.session.commit()
        return record

    def add_record(self, plan_id: int, data: AllocationRecordIn) -> AllocationRecord:
        plan = self._plan(plan_id)
        AccountService(self.session, self.user_id).get(data.account_id)

        rules = self._rules()
        rule = next((r for r in rules if r.account_id == data.account_id), None)
        if rule is None:
            rule = rules[0] if rules else None
        if rule is None:
            raise ValueError("No allocation rules exist")

        record = AllocationRecord(
            user_id=self.user_id,
            income_plan_id=plan.id,
            account_id=data.account_id,
            rule_id=rule.id,
            amount=max(0.0, data.amount),
            category=data.category.strip(),
            is_forecast=plan.is_forecast,
            status=AllocationStatus.pending,
            matched_amount=0,
        )
        self.session.add(record)
        plan.allocations_customized = True
        self.session.commit()
        self.session.refresh(record)
        return record

    def delete_record(self, record_id: int) -> None:
        record = self._record(record_id)
        self.session.delete(record)
        self._mark_customized(record.income_plan_id)
        self.session.commit()

    def mark_complete(self, record_id: int) -> AllocationRecord:
        record = self._record(record_id)
        record.status = AllocationStatus.complete
        record.matched_amount = record.amount
        self._mark_customized(record.income_plan_id)
        self.session.commit()
        return record

    def reopen(self, record_id: int) -> AllocationRecord:
        record = self._record(record_id)
        record.status = AllocationStatus.pending
        record.matched_amount = 0
        self._mark_customized(record.income_plan_id)
        self.session.commit()
        return record

    def checklist(self, plan_id: int) -> dict[str, object]:
        plan = self._plan(plan_id)
        records = self.records_for_plan(plan.id)
        names = AccountService(self.session, self.user_id).names()

        items = [
            {
                "id": record.id,
                "account_id": record.account_id,
                "account_name": names.get(record.account_id, UNKNOWN_ACCOUNT),
                "rule_id": record.rule_id,
                "category": record.category,
                "amount": record.amount,
                "is_forecast": record.is_forecast,
                "status": record.status.value,
                "matched_amount": record.matched_amount,
                "remaining_amount": max(0.0, record.amount - record.matched_amount),
            }
            for record in records
        ]

        total_amount = plan.authoritative_amount
        allocated = sum(item["amount"] for item in items)
        matched = sum(item["matched_amount"] for item in items)
        completed = sum(1 for item in items if item["status"] == "complete")

        return {
            "plan_id": plan.id,
            "items": items,
            "total_amount": total_amount,
            "total_allocated": allocated,
            "total_matched": matched,
            "completed_count": completed,
            "total_items": len(items),
            "progress": matched / allocated if allocated > 0 else 0,
            "is_complete": bool(items) and completed == len(items),
            "unallocated": max(0.0, total_amount - allocated),
        }

    def active_distributions(self) -> list[dict[str, object]]:
        plans = self.session.scalars(
            select(IncomePlan)
            .where(
                IncomePlan.user_id == self.user_id,
                IncomePlan.status == IncomePlanStatus.matched,
            )
            .order_by(IncomePlan.expected_date, IncomePlan.id)
        ).all()

        active = []
        for plan in plans:
            records = self.records_for_plan(plan.id)
            if not records:
                continue
            completed = [
                r for r in records if r.status == AllocationStatus.complete
            ]
            if len(completed) == len(records):
                continue
            total_amount = sum(r.amount for r in records)
            total_matched = sum(r.matched_amount for r in records)
            active.append(
                {
                    "plan": plan,
                    "total_items": len(records),
                    "completed_items": len(completed),
                    "total_amount": total_amount,
                    "total_matched": total_matched,
                    "progress": (
                        total_matched / total_amount if total_amount > 0 else 0
                    ),
                }
            )
        return active

    def refresh_planned(self, today: Optional[date] = None) -> int:
        """
        Re-run allocations for upcoming planned plans so their forecast records
        follow rule edits. Plans whose records were edited, added to, removed
        or ticked off by hand are left alone until the user runs them again.
        """
        today = today or local_today()
        plan_ids = self.session.scalars(
            select(IncomePlan.id)
            .where(
                IncomePlan.user_id == self.user_id,
                IncomePlan.status == IncomePlanStatus.planned,
                IncomePlan.expected_date >= today.isoformat(),
                IncomePlan.allocations_customized.is_(False),
            )
            .order_by(IncomePlan.expected_date, IncomePlan.id)
        ).all()
        for plan_id in plan_ids:
            self.run_for_plan(plan_id)
        return len(plan_ids)

    def _mark_customized(self, plan_id: int) -> None:
        plan = self.session.get(IncomePlan, plan_id)
        if plan is not None:
            plan.allocations_customized = True

    def _fully_distributed(self, plan_id: int) -> bool:
        statuses = self.session.scalars(
            select(AllocationRecord.status).where(
                AllocationRecord.income_plan_id == plan_id
            )
        ).all()
        return bool(statuses) and all(
            status == AllocationStatus.complete for status in statuses
        )


def refresh_all_planned(session: Session, today: Optional[date] = None) -> int:
    user_ids = session.scalars(
        select(IncomePlan.user_id)
        .where(IncomePlan.status == IncomePlanStatus.planned)
        .distinct()
    ).all()
    return sum(
        AllocationService(session, user_id).refresh_planned(today)
        for user_id in user_ids
    )


@dataclass(frozen=True)
class MonthSummary:
    month: str
    total_income: int
    total_savings: int
    total_investing: int
    total_spending: int
    total_debt: int
    plan_count: int


class ForecastService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def monthly_forecast(
        self, months: Optional[int] = None, today: Optional[date] = None
    ) -> list[MonthSummary]:
        if months is None:
            months = get_settings().forecast_months
        plans = self.session.scalars(
            select(IncomePlan)
            .where(IncomePlan.user_id == self.user_id)
            .order_by(IncomePlan.expected_date, IncomePlan.id)
        ).all()
        rules = AllocationRuleService(self.session, self.user_id).list_all()

        forecast: list[MonthSummary] = []
        for key in upcoming_month_keys(months, today=today):
            month_plans = [p for p in plans if p.expected_date.startswith(key)]

            total_income = 0.0
            # lines outside these buckets are not counted anywhere
            totals = dict.fromkeys(FORECAST_BUCKETS, 0.0)
            for plan in month_plans:
                amount = plan.authoritative_amount
                total_income += amount
                for line in allocate(amount, rules):
                    if line.category in totals:
                        totals[line.category] += line.amount

            forecast.append(
                MonthSummary(
                    month=key,
                    total_income=round_whole(total_income),
                    total_savings=round_whole(totals["savings"]),
                    total_investing=round_whole(totals["investing"]),
                    total_spending=round_whole(totals["spending"]),
                    total_debt=round_whole(totals["debt"]),
                    plan_count=len(month_plans),
                )
            )
        return forecast
