from loan_service.schemas.loan import (
    BusinessRuleResponse,
    BusinessRulesResponse,
    FineCalculationResponse,
    LoanCreate,
    LoanHistoryResponse,
    LoanResponse,
    LoanValidationResponse,
)

__all__ = [
    "LoanCreate",
    "LoanResponse",
    "LoanValidationResponse",
    "FineCalculationResponse",
    "LoanHistoryResponse",
    "BusinessRuleResponse",
    "BusinessRulesResponse",
]
