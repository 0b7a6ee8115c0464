from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import AllocationRecord, AllocationStatus, IncomePlan, RuleType
from schemas import (
    AccountIn,
    AllocationRecordIn,
    AllocationRuleIn,
    IncomePlanIn,
    IncomePlanMatchIn,
)
from services import (
    AccountService,
    AllocationLocked,
    AllocationRecordNotFound,
    AllocationRuleService,
    AllocationService,
    IncomePlanService,
    refresh_all_planned,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def seed_rules(session: Session, user_id: int = 1) -> dict[str, int]:
    accounts = AccountService(session, user_id)
    savings = accounts.create(AccountIn(name="Savings"))
    checking = accounts.create(AccountIn(name="Checking"))
    spare = accounts.create(AccountIn(name="Spare"))
    rules = AllocationRuleService(session, user_id)
    first = rules.create(
        AllocationRuleIn(
            account_id=savings.id,
            category="savings",
            rule_type=RuleType.percent,
            value=10,
            priority=0,
        )
    )
    rules.create(
        AllocationRuleIn(
            account_id=checking.id,
            category="spending",
            rule_type=RuleType.percent,
            value=100,
            priority=1,
        )
    )
    return {
        "savings": savings.id,
        "checking": checking.id,
        "spare": spare.id,
        "first_rule": first.id,
    }


def make_plan(
    session: Session, expected_date=date(2026, 11, 1), amount=1000, user_id=1
):
    return IncomePlanService(session, user_id).create(
        IncomePlanIn(expected_date=expected_date, expected_amount=amount, label="Pay")
    )


def records(session: Session, plan_id: int) -> list[AllocationRecord]:
    return AllocationService(session).records_for_plan(plan_id)


def test_update_amount_on_forecast_record_clamps_to_zero() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session)
        service = AllocationService(session)
        service.run_for_plan(plan.id)
        record = records(session, plan.id)[0]

        assert service.update_amount(record.id, 75.5).amount == 75.5
        assert service.update_amount(record.id, -20).amount == 0


def test_update_amount_is_locked_once_matched() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session)
        IncomePlanService(session).match(
            plan.id, IncomePlanMatchIn(actual_amount=1000, rerun=True)
        )
        record = records(session, plan.id)[0]

        with pytest.raises(AllocationLocked):
            AllocationService(session).update_amount(record.id, 5)


def test_update_amount_is_locked_when_fully_distributed() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session)
        service = AllocationService(session)
        service.run_for_plan(plan.id)
        for record in records(session, plan.id):
            service.mark_complete(record.id)

        with pytest.raises(AllocationLocked, match="fully distributed"):
            service.update_amount(records(session, plan.id)[0].id, 5)


def test_add_record_uses_account_rule_or_first_rule() -> None:
    with make_session() as session:
        ids = seed_rules(session)
        plan = make_plan(session)
        service = AllocationService(session)

        own = service.add_record(
            plan.id,
            AllocationRecordIn(account_id=ids["checking"], amount=50, category="fun"),
        )
        fallback = service.add_record(
            plan.id,
            AllocationRecordIn(account_id=ids["spare"], amount=-5, category="misc"),
        )

        checking_rule = AllocationRuleService(session).list_all()[1]
        assert own.rule_id == checking_rule.id
        assert fallback.rule_id == ids["first_rule"]
        assert fallback.amount == 0
        assert own.is_forecast is True
        assert own.status == AllocationStatus.pending


def test_add_record_without_rules_fails() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Lonely"))
        plan = make_plan(session)

        with pytest.raises(ValueError, match="No allocation rules exist"):
            AllocationService(session).add_record(
                plan.id,
                AllocationRecordIn(account_id=account.id, amount=10, category="x"),
            )


def test_complete_and_reopen_track_matched_amount() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session)
        service = AllocationService(session)
        service.run_for_plan(plan.id)
        record = records(session, plan.id)[1]

        done = service.mark_complete(record.id)
        assert done.status == AllocationStatus.complete
        assert done.matched_amount == 900

        reopened = service.reopen(record.id)
        assert reopened.status == AllocationStatus.pending
        assert reopened.matched_amount == 0


def test_delete_record_and_foreign_access() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session)
        service = AllocationService(session)
        service.run_for_plan(plan.id)
        first, second = records(session, plan.id)

        with pytest.raises(AllocationRecordNotFound):
            AllocationService(session, user_id=2).delete_record(first.id)

        service.delete_record(first.id)
        assert [r.id for r in records(session, plan.id)] == [second.id]


def test_checklist_progress() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session)
        IncomePlanService(session).match(
            plan.id, IncomePlanMatchIn(actual_amount=1000, rerun=True)
        )
        service = AllocationService(session)
        first, second = records(session, plan.id)
        service.mark_complete(first.id)

        checklist = service.checklist(plan.id)

        assert [item["account_name"] for item in checklist["items"]] == [
            "Savings",
            "Checking",
        ]
        assert checklist["items"][0]["remaining_amount"] == 0
        assert checklist["items"][1]["remaining_amount"] == 900
        assert checklist["total_amount"] == 1000
        assert checklist["total_allocated"] == 1000
        assert checklist["total_matched"] == 100
        assert checklist["completed_count"] == 1
        assert checklist["total_items"] == 2
        assert checklist["progress"] == pytest.approx(0.1)
        assert checklist["is_complete"] is False
        assert checklist["unallocated"] == 0

        service.mark_complete(second.id)
        assert service.checklist(plan.id)["is_complete"] is True


def test_checklist_for_plan_without_records() -> None:
    with make_session() as session:
        plan = make_plan(session, amount=300)
        checklist = AllocationService(session).checklist(plan.id)
        assert checklist["items"] == []
        assert checklist["progress"] == 0
        assert checklist["is_complete"] is False
        assert checklist["unallocated"] == 300


def test_active_distributions_lists_matched_unfinished_plans() -> None:
    with make_session() as session:
        seed_rules(session)
        service = AllocationService(session)
        plans = IncomePlanService(session)

        planned = make_plan(session, expected_date=date(2026, 11, 1))
        service.run_for_plan(planned.id)
        matched = make_plan(session, expected_date=date(2026, 11, 2))
        plans.match(matched.id, IncomePlanMatchIn(actual_amount=1000, rerun=True))

        active = service.active_distributions()
        assert [item["plan"].id for item in active] == [matched.id]
        assert active[0]["total_items"] == 2
        assert active[0]["completed_items"] == 0
        assert active[0]["progress"] == 0

        for record in records(session, matched.id):
            service.mark_complete(record.id)
        assert service.active_distributions() == []


def test_refresh_planned_reruns_upcoming_planned_plans() -> None:
    with make_session() as session:
        seed_rules(session)
        past = make_plan(session, expected_date=date(2026, 10, 1))
        upcoming = make_plan(session, expected_date=date(2026, 11, 20))
        later = make_plan(session, expected_date=date(2026, 12, 1), amount=500)
        matched = make_plan(session, expected_date=date(2026, 11, 25))
        IncomePlanService(session).match(
            matched.id, IncomePlanMatchIn(actual_amount=900)
        )

        refreshed = AllocationService(session).refresh_planned(
            today=date(2026, 11, 18)
        )

        assert refreshed == 2
        assert records(session, past.id) == []
        assert records(session, matched.id) == []
        assert [r.amount for r in records(session, upcoming.id)] == [100, 900]
        assert [r.amount for r in records(session, later.id)] == [50, 450]


def test_refresh_all_planned_covers_every_user() -> None:
    with make_session() as session:
        seed_rules(session, user_id=1)
        seed_rules(session, user_id=2)
        mine = make_plan(session, expected_date=date(2026, 11, 20))
        theirs = make_plan(session, expected_date=date(2026, 11, 21), user_id=2)

        assert refresh_all_planned(session, today=date(2026, 11, 18)) == 2

        plan_ids = session.scalars(
            select(AllocationRecord.income_plan_id).distinct()
        ).all()
        assert sorted(plan_ids) == sorted([mine.id, theirs.id])


def test_refresh_leaves_hand_edited_plans_alone() -> None:
    with make_session() as session:
        seed_rules(session)
        edited = make_plan(session, expected_date=date(2026, 11, 20))
        completed = make_plan(session, expected_date=date(2026, 11, 21))
        untouched = make_plan(session, expected_date=date(2026, 11, 22))
        service = AllocationService(session)
        for plan in (edited, completed, untouched):
            service.run_for_plan(plan.id)

        service.update_amount(records(session, edited.id)[0].id, 123)
        service.mark_complete(records(session, completed.id)[1].id)

        refreshed = service.refresh_planned(today=date(2026, 11, 18))

        assert refreshed == 1
        assert [r.amount for r in records(session, edited.id)] == [123, 900]
        assert [r.status for r in records(session, completed.id)] == [
            AllocationStatus.pending,
            AllocationStatus.complete,
        ]
        assert records(session, completed.id)[1].matched_amount == 900


def test_explicit_run_makes_plan_refreshable_again() -> None:
    with make_session() as session:
        seed_rules(session)
        plan = make_plan(session, expected_date=date(2026, 11, 20))
        service = AllocationService(session)
        service.run_for_plan(plan.id)
        service.update_amount(records(session, plan.id)[0].id, 123)
        assert session.get(IncomePlan, plan.id).allocations_customized is True

        service.run_for_plan(plan.id)

        assert session.get(IncomePlan, plan.id).allocations_customized is False
        assert service.refresh_planned(today=date(2026, 11, 18)) == 1
        assert [r.amount for r in records(session, plan.id)] == [100, 900]


def test_quick_add_and_delete_count_as_hand_edits() -> None:
    with make_session() as session:
        ids = seed_rules(session)
        added = make_plan(session, expected_date=date(2026, 11, 20))
        removed = make_plan(session, expected_date=date(2026, 11, 21))
        service = AllocationService(session)
        service.run_for_plan(added.id)
        service.run_for_plan(removed.id)

        service.add_record(
            added.id,
            AllocationRecordIn(account_id=ids["spare"], amount=25, category="gift"),
        )
        service.delete_record(records(session, removed.id)[0].id)

        assert service.refresh_planned(today=date(2026, 11, 18)) == 0
        assert [r.amount for r in records(session, added.id)] == [100, 900, 25]
        assert [r.amount for r in records(session, removed.id)] == [900]
