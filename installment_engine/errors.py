"""
Error Taxonomy Module

Every failure the engine reports to its callers. Each error carries a stable
``code`` so transports can map error kinds to distinct responses.
"""

from typing import Optional


class InstallmentEngineError(Exception):
    """Base class for all engine errors"""

    code = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(InstallmentEngineError):
    """Bad input shape or range, unknown status value, or illegal status transition"""

    code = "validation_error"


class NotFoundError(InstallmentEngineError):
    """Referenced customer, product, plan, installment or guarantor is absent"""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[object] = None, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        if message is None:
            message = f"{entity.capitalize()} not found" if entity_id is None \
                else f"{entity.capitalize()} {entity_id} not found"
        super().__init__(message)


class AlreadyPaidError(InstallmentEngineError):
    """Installment has already been paid"""

    code = "already_paid"

    def __init__(self, plan_id: str, installment_no: int):
        self.plan_id = plan_id
        self.installment_no = installment_no
        super().__init__(f"Installment {installment_no} of plan {plan_id} is already paid")


class ConflictError(InstallmentEngineError):
    """A concurrent writer changed the record first"""

    code = "conflict"
