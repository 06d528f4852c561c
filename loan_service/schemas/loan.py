from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from loan_service.models.history import LoanAction
from loan_service.models.loan import LoanStatus


class LoanCreate(BaseModel):
    user_id: int = Field(..., gt=0, description="ID of the borrowing user (owned by the user service).")
    book_id: int = Field(..., gt=0, description="ID of the book to borrow (owned by the book service).")
    loan_days: int | None = Field(
        None,
        description=(
            "Loan length in days. Optional, defaults to 14. "
            "Must be between 7 and 30; the range is checked as a business rule, not a schema rule."
        ),
    )

    model_config = ConfigDict(
        json_schema_extra={"example": {"user_id": 1, "book_id": 5, "loan_days": 14}}
    )


class LoanResponse(BaseModel):
    id: int = Field(..., description="Unique loan identifier.")
    user_id: int = Field(..., description="ID of the borrowing user.")
    book_id: int = Field(..., description="ID of the borrowed book.")
    loan_date: date = Field(..., description="Date the loan was created.")
    due_date: date = Field(..., description="Date the book must be returned by.")
    return_date: date | None = Field(
        None, description="Date the book was returned. `null` while open or when cancelled."
    )
    status: LoanStatus = Field(
        ..., description="`ACTIVE` | `OVERDUE` | `RETURNED` | `CANCELLED`."
    )
    loan_days: int = Field(..., description="Loan length chosen at creation (7–30).")
    fine_amount: Decimal = Field(..., description="Accrued fine, `0.00` unless overdue.")
    extensions_count: int = Field(..., description="Extensions used so far (max 2).")
    created_at: datetime = Field(..., description="Creation timestamp.")
    updated_at: datetime | None = Field(None, description="Last modification timestamp.")

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": 1,
                "user_id": 5,
                "book_id": 10,
                "loan_date": "2024-01-15",
                "due_date": "2024-01-29",
                "return_date": None,
                "status": "ACTIVE",
                "loan_days": 14,
                "fine_amount": "0.00",
                "extensions_count": 0,
                "created_at": "2024-01-15T10:30:00Z",
                "updated_at": "2024-01-15T10:30:00Z",
            }
        },
    )


class LoanValidationResponse(BaseModel):
    user_id: int
    book_id: int
    valid: bool = Field(..., description="True when every rule passes and the loan can be created.")
    message: str = Field(..., description="Message of the first failing rule, or a success message.")
    user_exists: bool = Field(..., description="User exists and is not blocked.")
    book_available: bool = Field(..., description="Book has at least one available copy.")
    within_loan_limit: bool = Field(..., description="User holds fewer than 5 open loans.")
    no_active_loan_for_book: bool = Field(
        ..., description="User has no open loan for this book."
    )
    valid_loan_days: bool = Field(..., description="Requested loan length is within 7–30 days.")

    model_config = ConfigDict(from_attributes=True)


class FineCalculationResponse(BaseModel):
    loan_id: int
    days_overdue: int = Field(..., ge=0, description="Days past the due date.")
    daily_fine_rate: Decimal = Field(..., description="Configured fine per overdue day.")
    total_fine: Decimal = Field(..., ge=0, description="`days_overdue × daily_fine_rate`.")
    message: str

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "loan_id": 1,
                "days_overdue": 5,
                "daily_fine_rate": "1.50",
                "total_fine": "7.50",
                "message": "Loan overdue by 5 days",
            }
        },
    )


class LoanHistoryResponse(BaseModel):
    id: int
    loan_id: int
    action: LoanAction = Field(
        ..., description="`CREATED` | `RETURNED` | `EXTENDED` | `CANCELLED` | `FINE_APPLIED`."
    )
    notes: str | None = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class BusinessRuleResponse(BaseModel):
    name: str
    description: str

    model_config = ConfigDict(from_attributes=True)


class BusinessRulesResponse(BaseModel):
    rules: list[BusinessRuleResponse]
    total: int
