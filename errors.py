"""Domain error types.

Every error subclasses ``ValueError`` so callers that only know about
``ValueError`` keep working; the HTTP layer maps each class to a status code
and a machine-readable ``code``.
"""


class DomainError(ValueError):
    code = "domain_error"


class ValidationError(DomainError):
    code = "validation_error"


class NotFoundError(DomainError):
    code = "not_found"


class ConflictError(DomainError):
    code = "conflict"


class BusinessRuleError(DomainError):
    """A request that is well-formed but breaks a rule of the ledger."""

    code = "business_rule_violation"


class ExportUnavailableError(RuntimeError):
    code = "export_unavailable"


def category_not_found(category_id: int) -> str:
    return f"Category {category_id} not found"


def transaction_not_found(transaction_id: int) -> str:
    return f"Transaction {transaction_id} not found"


def category_in_use(name: str, transaction_count: int) -> str:
    plural = "s" if transaction_count != 1 else ""
    return (
        f"Cannot delete category '{name}': it still has "
        f"{transaction_count} transaction{plural}"
    )


def category_type_mismatch(category_type: str, txn_type: str) -> str:
    return (
        f"Category type '{category_type}' does not accept "
        f"'{txn_type}' transactions"
    )
