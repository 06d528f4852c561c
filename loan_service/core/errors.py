"""Error taxonomy for the loan lifecycle.

Services raise these directly; because they are ``HTTPException`` subclasses
FastAPI turns them into the matching 4xx response without extra handlers.
"""

from fastapi import HTTPException


class LoanNotFoundError(HTTPException):
    def __init__(self, loan_id: int) -> None:
        super().__init__(status_code=404, detail="Loan not found")
        self.loan_id = loan_id


class LoanRuleViolation(HTTPException):
    """A creation rule or transition precondition failed. Nothing was mutated."""

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(status_code=400, detail=message)
        self.rule = rule
        self.message = message


class LoanConflictError(HTTPException):
    """Another request changed the same loan first."""

    def __init__(self, detail: str = "Loan was modified concurrently, retry the request") -> None:
        super().__init__(status_code=409, detail=detail)


class CollaboratorUnavailable(Exception):
    """A sibling service (users, books, notifications) could not be reached or answered with an error."""

    def __init__(self, service: str, reason: str) -> None:
        super().__init__(f"{service} service unavailable: {reason}")
        self.service = service
        self.reason = reason
