"""Loan lifecycle tests.

Service-level: state machine transitions, fines, side effects, history and
concurrent updates. Runs against in-memory SQLite with fake collaborators.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from loan_service.core.errors import LoanConflictError, LoanNotFoundError, LoanRuleViolation
from loan_service.models.history import LoanAction
from loan_service.models.loan import Loan, LoanStatus
from loan_service.services import loan as loan_service
from loan_service.services.history import list_history
from loan_service.services.loan import (
    calculate_fine,
    cancel_loan,
    create_loan,
    describe_business_rules,
    extend_loan,
    get_loan,
    get_loan_history,
    is_overdue,
    list_active_loans_by_user,
    list_loans_by_book,
    list_loans_by_user,
    list_overdue_loans,
    mark_overdue,
    return_loan,
)

D = date(2026, 3, 1)


async def _open(db, effects, *, user_id: int = 1, book_id: int = 10, loan_days: int | None = None) -> Loan:
    return await create_loan(
        db, effects, user_id=user_id, book_id=book_id, loan_days=loan_days, today=D
    )


async def _actions(db, loan_id: int) -> list[LoanAction]:
    return [entry.action for entry in await list_history(db, loan_id)]


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_loan_defaults(db, effects):
    loan = await _open(db, effects)

    assert loan.id is not None
    assert loan.status == LoanStatus.ACTIVE
    assert loan.loan_date == D
    assert loan.due_date == D + timedelta(days=14)
    assert loan.loan_days == 14
    assert loan.fine_amount == Decimal("0.00")
    assert loan.extensions_count == 0
    assert loan.return_date is None

    await effects.drain()
    assert effects.collaborators.books.adjustments == [(10, -1)]
    assert effects.collaborators.notifier.types() == ["LOAN_CREATED"]
    assert await _actions(db, loan.id) == [LoanAction.CREATED]


@pytest.mark.asyncio
async def test_create_loan_with_custom_days(db, effects):
    loan = await _open(db, effects, loan_days=21)
    assert loan.due_date == D + timedelta(days=21)
    assert loan.loan_days == 21


@pytest.mark.asyncio
async def test_create_fails_when_book_has_no_copies(db, effects):
    effects.collaborators.books.copies[10] = 0

    with pytest.raises(LoanRuleViolation) as exc_info:
        await _open(db, effects)

    assert exc_info.value.rule == "book_available"
    assert await list_loans_by_user(db, 1) == []
    assert effects.collaborators.books.adjustments == []


@pytest.mark.asyncio
async def test_sixth_loan_is_rejected_without_touching_inventory(db, effects):
    for book_id in range(100, 105):
        await _open(db, effects, book_id=book_id)
    before = list(effects.collaborators.books.adjustments)

    with pytest.raises(LoanRuleViolation) as exc_info:
        await _open(db, effects, book_id=200)

    assert exc_info.value.rule == "within_loan_limit"
    assert effects.collaborators.books.adjustments == before
    assert len(await list_active_loans_by_user(db, 1)) == 5


@pytest.mark.asyncio
async def test_duplicate_open_loan_is_rejected(db, effects):
    await _open(db, effects)
    with pytest.raises(LoanRuleViolation) as exc_info:
        await _open(db, effects)
    assert exc_info.value.rule == "no_active_loan_for_book"


@pytest.mark.asyncio
async def test_create_out_of_range_days_is_rejected(db, effects):
    with pytest.raises(LoanRuleViolation) as exc_info:
        await _open(db, effects, loan_days=31)
    assert exc_info.value.rule == "valid_loan_days"
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_unique_index_catches_duplicate_that_slipped_past_the_checks(db, effects, monkeypatch):
    await _open(db, effects)

    async def _stale_gate(*args, **kwargs):
        return 14

    monkeypatch.setattr(loan_service, "ensure_creation_allowed", _stale_gate)

    with pytest.raises(LoanConflictError) as exc_info:
        await _open(db, effects)

    assert exc_info.value.status_code == 409
    assert effects.collaborators.books.adjustments == [(10, -1)]
    assert len(await list_loans_by_user(db, 1)) == 1


@pytest.mark.asyncio
async def test_book_can_be_borrowed_again_after_return(db, effects):
    first = await _open(db, effects)
    await return_loan(db, effects, loan_id=first.id, today=D + timedelta(days=3))

    second = await _open(db, effects)
    assert second.id != first.id
    assert second.status == LoanStatus.ACTIVE


# ---------------------------------------------------------------------------
# Return
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_return_on_time_has_no_fine(db, effects):
    loan = await _open(db, effects)
    returned = await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=14))

    assert returned.status == LoanStatus.RETURNED
    assert returned.return_date == D + timedelta(days=14)
    assert returned.fine_amount == Decimal("0.00")

    await effects.drain()
    assert effects.collaborators.books.adjustments == [(10, -1), (10, +1)]
    assert effects.collaborators.notifier.sent[-1]["priority"] == "MEDIUM"


@pytest.mark.asyncio
async def test_late_return_stores_fine(db, effects):
    loan = await _open(db, effects)
    returned = await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=19))

    assert returned.status == LoanStatus.RETURNED
    assert returned.fine_amount == Decimal("7.50")
    assert not is_overdue(returned, D + timedelta(days=30))

    await effects.drain()
    last = effects.collaborators.notifier.sent[-1]
    assert last["type"] == "LOAN_RETURNED"
    assert last["priority"] == "HIGH"
    assert "$7.50" in last["message"]

    entries = await list_history(db, loan.id)
    assert entries[0].action == LoanAction.RETURNED
    assert entries[0].notes == "Book returned. Fine: $7.50"


@pytest.mark.asyncio
async def test_overdue_loan_can_be_returned(db, effects):
    loan = await _open(db, effects)
    await mark_overdue(db, loan_id=loan.id, today=D + timedelta(days=16))

    returned = await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=17))
    assert returned.status == LoanStatus.RETURNED
    assert returned.fine_amount == Decimal("4.50")


@pytest.mark.asyncio
async def test_return_of_cancelled_loan_changes_nothing(db, effects):
    loan = await _open(db, effects)
    await cancel_loan(db, effects, loan_id=loan.id)
    adjustments = list(effects.collaborators.books.adjustments)

    with pytest.raises(LoanRuleViolation) as exc_info:
        await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=2))

    assert exc_info.value.rule == "returnable"
    reloaded = await get_loan(db, loan.id)
    assert reloaded.status == LoanStatus.CANCELLED
    assert reloaded.return_date is None
    assert effects.collaborators.books.adjustments == adjustments
    assert await _actions(db, loan.id) == [LoanAction.CANCELLED, LoanAction.CREATED]


@pytest.mark.asyncio
async def test_second_return_is_rejected(db, effects):
    loan = await _open(db, effects)
    await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=1))

    with pytest.raises(LoanRuleViolation):
        await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=2))

    assert effects.collaborators.books.adjustments.count((10, +1)) == 1


@pytest.mark.asyncio
async def test_unknown_loan_is_not_found(db, effects):
    with pytest.raises(LoanNotFoundError) as exc_info:
        await return_loan(db, effects, loan_id=9999, today=D)
    assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# Extend
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_extend_twice_then_refuse(db, effects):
    loan = await _open(db, effects)

    loan = await extend_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=1))
    assert loan.due_date == D + timedelta(days=21)
    assert loan.extensions_count == 1

    loan = await extend_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=2))
    assert loan.due_date == D + timedelta(days=28)
    assert loan.extensions_count == 2

    with pytest.raises(LoanRuleViolation) as exc_info:
        await extend_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=3))

    assert exc_info.value.rule == "max_extensions"
    reloaded = await get_loan(db, loan.id)
    assert reloaded.due_date == D + timedelta(days=28)
    assert reloaded.extensions_count == 2

    await effects.drain()
    assert effects.collaborators.notifier.types().count("LOAN_EXTENDED") == 2
    assert await _actions(db, loan.id) == [
        LoanAction.EXTENDED,
        LoanAction.EXTENDED,
        LoanAction.CREATED,
    ]


@pytest.mark.asyncio
async def test_past_due_loan_cannot_be_extended_even_before_sweep(db, effects):
    loan = await _open(db, effects)
    assert loan.status == LoanStatus.ACTIVE

    with pytest.raises(LoanRuleViolation) as exc_info:
        await extend_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=15))

    assert exc_info.value.rule == "extendable"
    assert (await get_loan(db, loan.id)).due_date == D + timedelta(days=14)


@pytest.mark.asyncio
async def test_overdue_status_cannot_be_extended(db, effects):
    loan = await _open(db, effects)
    await mark_overdue(db, loan_id=loan.id, today=D + timedelta(days=15))

    with pytest.raises(LoanRuleViolation):
        await extend_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=15))


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_active_loan(db, effects):
    loan = await _open(db, effects)
    cancelled = await cancel_loan(db, effects, loan_id=loan.id)

    assert cancelled.status == LoanStatus.CANCELLED
    assert cancelled.return_date is None
    assert cancelled.is_terminal

    await effects.drain()
    assert effects.collaborators.books.adjustments == [(10, -1), (10, +1)]
    assert effects.collaborators.notifier.types() == ["LOAN_CREATED", "LOAN_CANCELLED"]


@pytest.mark.asyncio
async def test_overdue_loan_cannot_be_cancelled(db, effects):
    loan = await _open(db, effects)
    await mark_overdue(db, loan_id=loan.id, today=D + timedelta(days=20))

    with pytest.raises(LoanRuleViolation) as exc_info:
        await cancel_loan(db, effects, loan_id=loan.id)

    assert exc_info.value.rule == "cancellable"
    assert (await get_loan(db, loan.id)).status == LoanStatus.OVERDUE


# ---------------------------------------------------------------------------
# Overdue marking and fines
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_mark_overdue_is_idempotent_on_history(db, effects):
    loan = await _open(db, effects)

    first, transitioned = await mark_overdue(db, loan_id=loan.id, today=D + timedelta(days=16))
    assert transitioned is True
    assert first.status == LoanStatus.OVERDUE
    assert first.fine_amount == Decimal("3.00")

    second, transitioned = await mark_overdue(db, loan_id=loan.id, today=D + timedelta(days=18))
    assert transitioned is False
    assert second.status == LoanStatus.OVERDUE
    assert second.fine_amount == Decimal("6.00")

    actions = await _actions(db, loan.id)
    assert actions.count(LoanAction.FINE_APPLIED) == 1
    entries = await list_history(db, loan.id)
    assert entries[0].notes == "Loan overdue by 2 days. Fine: $3.00"


@pytest.mark.asyncio
async def test_mark_overdue_leaves_current_loan_alone(db, effects):
    loan = await _open(db, effects)
    same, transitioned = await mark_overdue(db, loan_id=loan.id, today=D + timedelta(days=14))
    assert transitioned is False
    assert same.status == LoanStatus.ACTIVE
    assert same.fine_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_list_overdue_loans_marks_and_returns_them(db, effects):
    late = await _open(db, effects, book_id=10, loan_days=7)
    await _open(db, effects, book_id=11, loan_days=30)

    overdue = await list_overdue_loans(db, today=D + timedelta(days=10))

    assert [loan.id for loan in overdue] == [late.id]
    assert overdue[0].status == LoanStatus.OVERDUE
    assert overdue[0].fine_amount == Decimal("4.50")


@pytest.mark.asyncio
async def test_list_overdue_loans_skips_a_loan_lost_to_a_concurrent_write(
    db, effects, session_factory, monkeypatch
):
    raced = await _open(db, effects, book_id=10, loan_days=7)
    late = await _open(db, effects, book_id=11, loan_days=7)
    real_commit = loan_service._commit

    async def commit_after_concurrent_edit(session, loan):
        if loan.id == raced.id:
            async with session_factory() as other:
                await other.execute(
                    update(Loan).where(Loan.id == raced.id).values(version=Loan.version + 1)
                )
                await other.commit()
        await real_commit(session, loan)

    monkeypatch.setattr(loan_service, "_commit", commit_after_concurrent_edit)
    overdue = await list_overdue_loans(db, today=D + timedelta(days=10))
    monkeypatch.setattr(loan_service, "_commit", real_commit)

    assert [loan.id for loan in overdue] == [late.id]
    assert (await db.get(Loan, raced.id, populate_existing=True)).status == LoanStatus.ACTIVE


@pytest.mark.asyncio
async def test_calculate_fine_for_open_overdue_loan_persists_it(db, effects):
    loan = await _open(db, effects)
    result = await calculate_fine(db, loan_id=loan.id, today=D + timedelta(days=19))

    assert result.days_overdue == 5
    assert result.daily_fine_rate == Decimal("1.50")
    assert result.total_fine == Decimal("7.50")
    assert result.message == "Loan overdue by 5 days"
    assert (await get_loan(db, loan.id)).fine_amount == Decimal("7.50")


@pytest.mark.asyncio
async def test_calculate_fine_for_current_loan_is_zero(db, effects):
    loan = await _open(db, effects)
    result = await calculate_fine(db, loan_id=loan.id, today=D + timedelta(days=3))
    assert result.days_overdue == 0
    assert result.total_fine == Decimal("0.00")
    assert result.message == "The loan is not overdue"


@pytest.mark.asyncio
async def test_calculate_fine_for_late_return_reports_stored_fine(db, effects):
    loan = await _open(db, effects)
    await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=16))

    result = await calculate_fine(db, loan_id=loan.id, today=D + timedelta(days=40))
    assert result.days_overdue == 2
    assert result.total_fine == Decimal("3.00")
    assert result.message == "Loan was returned 2 days late"


# ---------------------------------------------------------------------------
# Side-effect failures never undo a committed transition
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_notification_does_not_revert_loan(db, effects):
    effects.collaborators.notifier.fail = True

    loan = await _open(db, effects)
    await effects.drain()

    assert effects.pending == 0
    assert effects.collaborators.notifier.sent == []
    assert (await get_loan(db, loan.id)).status == LoanStatus.ACTIVE


@pytest.mark.asyncio
async def test_failed_inventory_adjustment_does_not_revert_return(db, effects):
    loan = await _open(db, effects)
    effects.collaborators.books.fail_adjustments = True

    returned = await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=2))

    assert returned.status == LoanStatus.RETURNED
    assert await _actions(db, loan.id) == [LoanAction.RETURNED, LoanAction.CREATED]


@pytest.mark.asyncio
async def test_history_failure_does_not_fail_the_transition(db, effects, monkeypatch):
    loan = await _open(db, effects)

    real_commit = db.commit
    calls = 0

    async def flaky_commit():
        nonlocal calls
        calls += 1
        # First commit is the return itself, the second is its history row.
        if calls == 2:
            raise SQLAlchemyError("disk I/O error")
        await real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)
    returned = await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=1))
    monkeypatch.setattr(db, "commit", real_commit)

    assert returned.status == LoanStatus.RETURNED
    assert await _actions(db, loan.id) == [LoanAction.CREATED]


# ---------------------------------------------------------------------------
# Concurrent updates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stale_write_is_reported_as_conflict(db, effects, session_factory):
    loan = await _open(db, effects)

    async with session_factory() as other:
        stale = await other.get(Loan, loan.id)

        await extend_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=1))

        stale.status = LoanStatus.CANCELLED
        with pytest.raises(LoanConflictError) as exc_info:
            await loan_service._commit(other, stale)

    assert exc_info.value.status_code == 409
    reloaded = await get_loan(db, loan.id)
    assert reloaded.status == LoanStatus.ACTIVE
    assert reloaded.extensions_count == 1


@pytest.mark.asyncio
async def test_racing_returns_apply_once(db, effects, session_factory):
    loan = await _open(db, effects)

    async with session_factory() as other:
        # Load the loan into the second session while it is still ACTIVE.
        assert (await other.get(Loan, loan.id)).status == LoanStatus.ACTIVE
        await other.commit()

        await return_loan(db, effects, loan_id=loan.id, today=D + timedelta(days=1))

        with pytest.raises(LoanRuleViolation):
            await return_loan(other, effects, loan_id=loan.id, today=D + timedelta(days=1))

    assert effects.collaborators.books.adjustments.count((10, +1)) == 1
    assert (await _actions(db, loan.id)).count(LoanAction.RETURNED) == 1


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_loans_by_user_and_status(db, effects):
    a = await _open(db, effects, book_id=10)
    b = await _open(db, effects, book_id=11)
    await _open(db, effects, user_id=2, book_id=10)
    await return_loan(db, effects, loan_id=a.id, today=D + timedelta(days=1))

    assert {loan.id for loan in await list_loans_by_user(db, 1)} == {a.id, b.id}
    returned = await list_loans_by_user(db, 1, status=LoanStatus.RETURNED)
    assert [loan.id for loan in returned] == [a.id]
    assert [loan.id for loan in await list_active_loans_by_user(db, 1)] == [b.id]
    assert len(await list_loans_by_book(db, 10)) == 2


@pytest.mark.asyncio
async def test_history_of_unknown_loan_is_not_found(db):
    with pytest.raises(LoanNotFoundError):
        await get_loan_history(db, 424242)


def test_business_rules_reflect_configuration():
    rules = describe_business_rules()
    assert len(rules) == 10
    text = " ".join(rule.description for rule in rules)
    assert "at most 5" in text
    assert "$1.50 per day" in text
