from loan_service.models.history import LoanAction, LoanHistory
from loan_service.models.loan import OPEN_STATUSES, TERMINAL_STATUSES, Loan, LoanStatus

__all__ = ["Loan", "LoanStatus", "LoanHistory", "LoanAction", "OPEN_STATUSES", "TERMINAL_STATUSES"]
