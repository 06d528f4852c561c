from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from loan_service.auth.dependencies import (
    Principal,
    UserRole,
    ensure_owner_or_staff,
    get_current_user,
    require_role,
)
from loan_service.db.session import get_db
from loan_service.models.loan import Loan, LoanStatus
from loan_service.schemas.loan import (
    BusinessRuleResponse,
    BusinessRulesResponse,
    FineCalculationResponse,
    LoanCreate,
    LoanHistoryResponse,
    LoanResponse,
    LoanValidationResponse,
)
from loan_service.services.loan import (
    calculate_fine,
    cancel_loan,
    create_loan,
    describe_business_rules,
    extend_loan,
    get_loan,
    get_loan_history,
    list_active_loans_by_user,
    list_loans_by_book,
    list_loans_by_user,
    list_overdue_loans,
    return_loan,
)
from loan_service.services.side_effects import SideEffectCoordinator, get_side_effects
from loan_service.services.validation import validate_creation

router = APIRouter(prefix="/api/v1/loans", tags=["loans"])

_AUTH_RESPONSES: dict = {
    401: {"description": "Missing, invalid, or expired Bearer token."},
}
_LOAN_RESPONSES: dict = {
    **_AUTH_RESPONSES,
    403: {"description": "Forbidden: members may only access their own loans."},
    404: {"description": "Loan not found."},
}
_STAFF_ONLY = require_role(UserRole.ADMIN, UserRole.LIBRARIAN)


async def _load_owned(db: AsyncSession, loan_id: int, current_user: Principal) -> Loan:
    loan = await get_loan(db, loan_id)
    ensure_owner_or_staff(current_user, loan.user_id)
    return loan


@router.post(
    "",
    response_model=LoanResponse,
    status_code=201,
    summary="Create a loan",
    description=(
        "Opens a new `ACTIVE` loan after checking, in order:\n\n"
        "1. the user exists and is not blocked;\n"
        "2. the book has available copies;\n"
        "3. the user holds fewer than 5 active/overdue loans;\n"
        "4. the user has no open loan for the same book;\n"
        "5. `loan_days` (default 14) is between 7 and 30.\n\n"
        "The first failing rule aborts the request with `400`. On success the book's "
        "available copies are decremented and the user is notified; those calls are "
        "best-effort and never undo the loan."
    ),
    response_description="The new loan with status `ACTIVE`.",
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "A creation rule failed; `detail` names it."},
        403: {"description": "Members may only borrow for themselves."},
        409: {"description": "A concurrent request opened the same loan first."},
    },
)
async def create_loan_endpoint(
    body: LoanCreate,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    effects: SideEffectCoordinator = Depends(get_side_effects),
) -> LoanResponse:
    ensure_owner_or_staff(current_user, body.user_id)
    loan = await create_loan(
        db,
        effects,
        user_id=body.user_id,
        book_id=body.book_id,
        loan_days=body.loan_days,
        token=current_user.token,
    )
    return LoanResponse.model_validate(loan)


@router.post(
    "/validate",
    response_model=LoanValidationResponse,
    summary="Dry-run loan creation",
    description=(
        "Evaluates every creation rule without creating anything. All flags are "
        "always filled in; `message` explains the first failing rule."
    ),
    responses={**_AUTH_RESPONSES, 403: {"description": "Members may only validate for themselves."}},
)
async def validate_loan_endpoint(
    body: LoanCreate,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    effects: SideEffectCoordinator = Depends(get_side_effects),
) -> LoanValidationResponse:
    ensure_owner_or_staff(current_user, body.user_id)
    result = await validate_creation(
        db,
        effects.collaborators,
        user_id=body.user_id,
        book_id=body.book_id,
        loan_days=body.loan_days,
        token=current_user.token,
    )
    return LoanValidationResponse.model_validate(result)


@router.get(
    "/overdue",
    response_model=list[LoanResponse],
    summary="List overdue loans",
    description=(
        "Marks every open loan past its due date as `OVERDUE`, refreshes its fine, "
        "and returns them.\n\n**Requires:** Librarian or Admin role."
    ),
    responses={**_AUTH_RESPONSES, 403: {"description": "Librarian or Admin role required."}},
    dependencies=[_STAFF_ONLY],
)
async def list_overdue_endpoint(db: AsyncSession = Depends(get_db)) -> list[LoanResponse]:
    loans = await list_overdue_loans(db)
    return [LoanResponse.model_validate(loan) for loan in loans]


@router.get(
    "/business-rules",
    response_model=BusinessRulesResponse,
    summary="Describe loan business rules",
    responses=_AUTH_RESPONSES,
    dependencies=[Depends(get_current_user)],
)
async def business_rules_endpoint() -> BusinessRulesResponse:
    rules = describe_business_rules()
    return BusinessRulesResponse(
        rules=[BusinessRuleResponse.model_validate(rule) for rule in rules],
        total=len(rules),
    )


@router.get(
    "/user/{user_id}",
    response_model=list[LoanResponse],
    summary="List a user's loans",
    description="All loans of a user, newest first. Optionally filtered by `status`.",
    responses=_LOAN_RESPONSES,
)
async def list_user_loans_endpoint(
    user_id: int,
    status: LoanStatus | None = Query(None, description="Only loans in this status."),
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[LoanResponse]:
    ensure_owner_or_staff(current_user, user_id)
    loans = await list_loans_by_user(db, user_id, status=status)
    return [LoanResponse.model_validate(loan) for loan in loans]


@router.get(
    "/user/{user_id}/active",
    response_model=list[LoanResponse],
    summary="List a user's open loans",
    description="Loans in `ACTIVE` or `OVERDUE` status, soonest due first.",
    responses=_LOAN_RESPONSES,
)
async def list_user_active_loans_endpoint(
    user_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[LoanResponse]:
    ensure_owner_or_staff(current_user, user_id)
    loans = await list_active_loans_by_user(db, user_id)
    return [LoanResponse.model_validate(loan) for loan in loans]


@router.get(
    "/book/{book_id}",
    response_model=list[LoanResponse],
    summary="List a book's loans",
    responses={**_AUTH_RESPONSES, 403: {"description": "Librarian or Admin role required."}},
    dependencies=[_STAFF_ONLY],
)
async def list_book_loans_endpoint(
    book_id: int, db: AsyncSession = Depends(get_db)
) -> list[LoanResponse]:
    loans = await list_loans_by_book(db, book_id)
    return [LoanResponse.model_validate(loan) for loan in loans]


@router.get("/{loan_id}", response_model=LoanResponse, summary="Get a loan", responses=_LOAN_RESPONSES)
async def get_loan_endpoint(
    loan_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> LoanResponse:
    loan = await _load_owned(db, loan_id, current_user)
    return LoanResponse.model_validate(loan)


@router.post(
    "/{loan_id}/return",
    response_model=LoanResponse,
    summary="Return a loan",
    description=(
        "Closes an `ACTIVE` or `OVERDUE` loan. If the loan is past due, the fine "
        "(days overdue × daily rate) is stored on it. Returns `400` for any other status."
    ),
    responses={**_LOAN_RESPONSES, 400: {"description": "Loan is not open."}},
)
async def return_loan_endpoint(
    loan_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    effects: SideEffectCoordinator = Depends(get_side_effects),
) -> LoanResponse:
    await _load_owned(db, loan_id, current_user)
    loan = await return_loan(db, effects, loan_id=loan_id)
    return LoanResponse.model_validate(loan)


@router.patch(
    "/{loan_id}/extend",
    response_model=LoanResponse,
    summary="Extend a loan",
    description=(
        "Pushes the due date back 7 days. Only `ACTIVE`, not-overdue loans with fewer "
        "than 2 prior extensions qualify."
    ),
    responses={**_LOAN_RESPONSES, 400: {"description": "Loan cannot be extended."}},
)
async def extend_loan_endpoint(
    loan_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    effects: SideEffectCoordinator = Depends(get_side_effects),
) -> LoanResponse:
    await _load_owned(db, loan_id, current_user)
    loan = await extend_loan(db, effects, loan_id=loan_id)
    return LoanResponse.model_validate(loan)


@router.patch(
    "/{loan_id}/cancel",
    response_model=LoanResponse,
    summary="Cancel a loan",
    description="Cancels an `ACTIVE` loan and gives the copy back to the catalogue.",
    responses={**_LOAN_RESPONSES, 400: {"description": "Loan is not active."}},
)
async def cancel_loan_endpoint(
    loan_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    effects: SideEffectCoordinator = Depends(get_side_effects),
) -> LoanResponse:
    await _load_owned(db, loan_id, current_user)
    loan = await cancel_loan(db, effects, loan_id=loan_id)
    return LoanResponse.model_validate(loan)


@router.get(
    "/{loan_id}/fine",
    response_model=FineCalculationResponse,
    summary="Calculate a loan's fine",
    responses=_LOAN_RESPONSES,
)
async def fine_endpoint(
    loan_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> FineCalculationResponse:
    await _load_owned(db, loan_id, current_user)
    result = await calculate_fine(db, loan_id=loan_id)
    return FineCalculationResponse.model_validate(result)


@router.get(
    "/{loan_id}/history",
    response_model=list[LoanHistoryResponse],
    summary="Loan history",
    description="Every transition recorded for the loan, newest first.",
    responses=_LOAN_RESPONSES,
)
async def history_endpoint(
    loan_id: int,
    current_user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[LoanHistoryResponse]:
    await _load_owned(db, loan_id, current_user)
    entries = await get_loan_history(db, loan_id)
    return [LoanHistoryResponse.model_validate(entry) for entry in entries]
