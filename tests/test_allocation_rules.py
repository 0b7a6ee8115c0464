from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import AllocationRecord, RuleType
from schemas import AccountIn, AllocationRuleIn, IncomePlanIn
from services import (
    AccountNotFound,
    AccountService,
    AllocationRuleService,
    AllocationService,
    IncomePlanService,
    RuleNotFound,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def rule_in(account_id: int, value: float, priority: int, **kwargs) -> AllocationRuleIn:
    kwargs.setdefault("category", "savings")
    kwargs.setdefault("rule_type", RuleType.fixed)
    return AllocationRuleIn(
        account_id=account_id, value=value, priority=priority, **kwargs
    )


def test_rules_are_listed_by_priority_then_id() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Main"))
        service = AllocationRuleService(session)
        late = service.create(rule_in(account.id, 1, 5))
        early = service.create(rule_in(account.id, 2, 0))
        tie = service.create(rule_in(account.id, 3, 5))

        assert [r.id for r in service.list_all()] == [early.id, late.id, tie.id]


def test_category_is_trimmed_but_case_kept() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Main"))
        rule = AllocationRuleService(session).create(
            rule_in(account.id, 10, 0, category="  Emergency Fund ")
        )
        assert rule.category == "Emergency Fund"


def test_rule_requires_known_account() -> None:
    with make_session() as session:
        with pytest.raises(AccountNotFound):
            AllocationRuleService(session).create(rule_in(42, 10, 0))


def test_rule_cannot_use_foreign_account() -> None:
    with make_session() as session:
        theirs = AccountService(session, user_id=2).create(AccountIn(name="Theirs"))
        with pytest.raises(AccountNotFound):
            AllocationRuleService(session).create(rule_in(theirs.id, 10, 0))


def test_percent_above_hundred_is_invalid() -> None:
    with pytest.raises(ValidationError):
        rule_in(1, 100.5, 0, rule_type=RuleType.percent)
    with pytest.raises(ValidationError):
        rule_in(1, -1, 0)
    # fixed rules have no upper bound
    assert rule_in(1, 5000, 0).value == 5000


def test_update_and_missing_rule() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Main"))
        service = AllocationRuleService(session)
        rule = service.create(rule_in(account.id, 10, 0))

        updated = service.update(
            rule.id,
            rule_in(account.id, 25, 3, rule_type=RuleType.percent, active=False),
        )

        assert updated.rule_type == RuleType.percent
        assert updated.value == 25
        assert updated.priority == 3
        assert updated.active is False
        with pytest.raises(RuleNotFound):
            service.update(999, rule_in(account.id, 1, 0))


def test_reorder_assigns_positions() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Main"))
        service = AllocationRuleService(session)
        a = service.create(rule_in(account.id, 1, 0))
        b = service.create(rule_in(account.id, 2, 1))
        c = service.create(rule_in(account.id, 3, 2))

        ordered = service.reorder([c.id, a.id, b.id])

        assert [r.id for r in ordered] == [c.id, a.id, b.id]
        assert [r.priority for r in ordered] == [0, 1, 2]


def test_reorder_rejects_duplicates_and_unknown_ids() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Main"))
        service = AllocationRuleService(session)
        rule = service.create(rule_in(account.id, 1, 0))

        with pytest.raises(ValueError, match="Duplicate"):
            service.reorder([rule.id, rule.id])
        with pytest.raises(RuleNotFound):
            service.reorder([rule.id, 404])


def test_delete_removes_records_created_by_rule() -> None:
    with make_session() as session:
        account = AccountService(session).create(AccountIn(name="Main"))
        service = AllocationRuleService(session)
        kept = service.create(rule_in(account.id, 100, 0))
        dropped = service.create(rule_in(account.id, 50, 1, category="spending"))
        plan = IncomePlanService(session).create(
            IncomePlanIn(
                expected_date=date(2026, 11, 1), expected_amount=1000, label="Salary"
            )
        )
        AllocationService(session).run_for_plan(plan.id)

        service.delete(dropped.id)

        remaining = session.scalars(select(AllocationRecord)).all()
        assert [r.rule_id for r in remaining] == [kept.id]
        assert [r.id for r in service.list_all()] == [kept.id]
