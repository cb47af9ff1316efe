"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InvalidStateTransition(DomainException):
    """Requested edge does not exist from the loan's current state"""

    def __init__(self, current_state: str, message: str | None = None):
        self.current_state = current_state
        super().__init__(message or f"No transition allowed from state: {current_state}")


class GuardFailed(DomainException):
    """Edge exists but a business precondition is unmet"""

    def __init__(self, condition: str, message: str):
        self.condition = condition
        super().__init__(message)


class IdempotencyConflict(DomainException):
    """Idempotency key already bound to a different resource"""

    def __init__(self, key: str, scope: str):
        self.key = key
        self.scope = scope
        super().__init__(f"Idempotency key '{key}' in scope '{scope}' already used for a different resource")


class InvalidTerm(DomainException):
    """Term length does not map to any product tier"""

    def __init__(self, term_days: int, message: str | None = None):
        self.term_days = term_days
        super().__init__(
            message
            or f"Invalid term_days: {term_days}. Must be 1-60 (micro), 61-180 (extended), or 270/365 (longterm)"
        )


class ValidationError(DomainException):
    """Entity invariant violated on save"""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field} {message}")


class GatewayError(DomainException):
    """Disbursement gateway failed or is unavailable"""

    pass


class NotFound(DomainException):
    """Referenced record does not exist"""

    pass
