"""
Ledger Errors

Typed failures raised by the purchase ledger. Each carries a machine-readable
``code`` and structured ``details`` so callers branch on type, not message.

    LedgerError
    +-- ValidationFailure      malformed or out-of-range input (field + constraint)
    |   +-- DuplicateValue     unique field already holds the value
    +-- NotFound               referenced entity absent (entity + id)
    +-- ReferentialFailure     cross-entity relationship violated
    +-- NegativeAmountFailure  derived final amount would be negative
    +-- ConsistencyFailure     invariant check failed after a write (a bug)
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for API responses and log events."""
        return {
            "code": self.code,
            "message": self.message,
            "details": {k: _plain(v) for k, v in self.details.items()},
        }


class ValidationFailure(LedgerError):
    code = "VALIDATION_FAILURE"

    def __init__(self, field: str, constraint: str, value: Any = None, message: Optional[str] = None):
        self.field = field
        self.constraint = constraint
        self.value = value
        super().__init__(
            message or f"Invalid value for '{field}': {constraint}",
            {"field": field, "constraint": constraint, "value": value},
        )


class DuplicateValue(ValidationFailure):
    def __init__(self, field: str, value: Any):
        super().__init__(field, "must be unique", value)


class NotFound(LedgerError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} not found",
            {"entity": entity, "entity_id": entity_id},
        )


class ReferentialFailure(LedgerError):
    code = "REFERENTIAL_FAILURE"


class NegativeAmountFailure(LedgerError):
    code = "NEGATIVE_AMOUNT"

    def __init__(self, total_amount: Decimal, tax_amount: Decimal, discount_amount: Decimal, final_amount: Decimal):
        self.final_amount = final_amount
        super().__init__(
            f"Final amount would be negative ({final_amount})",
            {
                "total_amount": total_amount,
                "tax_amount": tax_amount,
                "discount_amount": discount_amount,
                "final_amount": final_amount,
            },
        )


class ConsistencyFailure(LedgerError):
    code = "CONSISTENCY_FAILURE"

    def __init__(self, entity: str, entity_id: Any, check: str, expected: Any, actual: Any):
        self.entity = entity
        self.entity_id = entity_id
        self.check = check
        super().__init__(
            f"{entity} {entity_id} failed invariant '{check}': expected {expected}, got {actual}",
            {
                "entity": entity,
                "entity_id": entity_id,
                "check": check,
                "expected": expected,
                "actual": actual,
            },
        )


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
