import uuid

import pytest

from chatrelay.errors import QuotaExceeded
from chatrelay.models import TokenUsage, User
from chatrelay.services.quota import QuotaGuard, Subject
from tests.fixtures.factories import UserFactory


def _settle(guard, db, subject, turn_id, tokens_in, tokens_out):
    return guard.settle(
        db,
        subject,
        turn_id=turn_id,
        provider="openai",
        model="gpt-4o-mini",
        input_tokens=tokens_in,
        output_tokens=tokens_out,
    )


def test_settle_deducts_and_appends_ledger(db_session):
    user = UserFactory.create(db_session, tokens_balance=5000)
    guard = QuotaGuard(minimum_threshold=100)
    turn_id = uuid.uuid4().hex

    settlement = _settle(guard, db_session, Subject.user(user.id), turn_id, 10, 5)

    assert settlement.applied
    assert settlement.tokens_used == 15
    assert settlement.balance == 4985
    db_session.expire_all()
    assert db_session.get(User, user.id).tokens_balance == 4985
    assert db_session.get(User, user.id).tokens_used_month == 15
    rows = db_session.query(TokenUsage).filter(TokenUsage.turn_id == turn_id).all()
    assert [(r.subject_type, r.tokens_input, r.tokens_output) for r in rows] == [("user", 10, 5)]


def test_repeated_settle_for_same_turn_is_noop(db_session):
    user = UserFactory.create(db_session, tokens_balance=1000)
    guard = QuotaGuard(minimum_threshold=100)
    turn_id = uuid.uuid4().hex

    _settle(guard, db_session, Subject.user(user.id), turn_id, 100, 50)
    second = _settle(guard, db_session, Subject.user(user.id), turn_id, 100, 50)

    assert not second.applied
    assert second.balance == 850
    assert db_session.query(TokenUsage).filter(TokenUsage.turn_id == turn_id).count() == 1


def test_balance_is_floored_at_zero(db_session):
    user = UserFactory.create(db_session, tokens_balance=20)
    guard = QuotaGuard(minimum_threshold=1)

    settlement = _settle(guard, db_session, Subject.user(user.id), uuid.uuid4().hex, 30, 30)

    assert settlement.balance == 0
    db_session.expire_all()
    assert db_session.get(User, user.id).tokens_used_month == 60


def test_admin_subject_never_touches_balance(db_session):
    admin = UserFactory.create_admin(db_session, tokens_balance=0)
    guard = QuotaGuard(minimum_threshold=100)
    subject = Subject.admin(admin.id)

    assert guard.check_sufficient(db_session, subject)
    settlement = _settle(guard, db_session, subject, uuid.uuid4().hex, 40, 2)

    assert settlement.applied
    assert settlement.balance is None
    db_session.expire_all()
    assert db_session.get(User, admin.id).tokens_balance == 0


def test_preflight_threshold(db_session):
    guard = QuotaGuard(minimum_threshold=100)
    rich = UserFactory.create(db_session, tokens_balance=100)
    poor = UserFactory.create(db_session, tokens_balance=99)

    assert guard.check_sufficient(db_session, Subject.user(rich.id))
    assert not guard.check_sufficient(db_session, Subject.user(poor.id))
    with pytest.raises(QuotaExceeded) as excinfo:
        guard.require_sufficient(db_session, Subject.user(poor.id))
    assert excinfo.value.code == "tokens_exhausted"
    assert excinfo.value.status_code == 402
    assert excinfo.value.balance == 99


def test_negative_or_missing_counts_settle_as_zero(db_session):
    user = UserFactory.create(db_session, tokens_balance=500)
    guard = QuotaGuard(minimum_threshold=1)

    settlement = _settle(guard, db_session, Subject.user(user.id), uuid.uuid4().hex, -5, None)

    assert (settlement.tokens_input, settlement.tokens_output) == (0, 0)
    assert settlement.balance == 500
