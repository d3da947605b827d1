"""
Error taxonomy for authorization and assignment operations.

Every error carries the tuple it was raised for so callers can log or
display which rule failed without parsing the message.
"""
from typing import Any, Dict, Optional


class RBACError(Exception):
    """Base class for all authorization errors."""

    code = "rbac_error"
    retryable = False

    def __init__(
        self,
        message: str = "",
        *,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        scope: Optional[str] = None,
        scope_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.user_id = user_id
        self.role = role
        self.scope = scope
        self.scope_id = scope_id
        self.actor_id = actor_id

    def with_context(self, **fields: Optional[str]) -> "RBACError":
        """Fill in context fields that are still unset. Returns self."""
        for key, value in fields.items():
            if getattr(self, key, None) is None:
                setattr(self, key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.code, "message": self.message}
        for key in ("user_id", "role", "scope", "scope_id", "actor_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def __str__(self) -> str:
        parts = [f"{k}={v}" for k, v in self.to_dict().items() if k not in ("error", "message")]
        if parts:
            return f"{self.message} ({', '.join(parts)})"
        return self.message


class NotAuthorized(RBACError):
    """The actor lacks the delegation rights for the requested mutation."""
    code = "not_authorized"


class UnknownSubject(RBACError):
    """The target user does not exist in the identity store."""
    code = "unknown_subject"


class UnknownRole(RBACError):
    code = "unknown_role"


class UnknownScope(RBACError):
    code = "unknown_scope"


class InvalidPermission(RBACError):
    code = "invalid_permission"


class Conflict(RBACError):
    """Duplicate assignment. Always absorbed by the store, never surfaced."""
    code = "conflict"


class StoreUnavailable(RBACError):
    """Connection or transaction failure in the backing store."""
    code = "store_unavailable"
    retryable = True


class Cancelled(RBACError):
    """The deadline passed or the cancellation signal fired mid-operation."""
    code = "cancelled"


class RegistryConfigurationError(RBACError):
    """The scope/role catalog is inconsistent. Raised at startup only."""
    code = "registry_configuration"


class BulkOperationError(RBACError):
    """
    A bulk assignment or revocation stopped at the first failing item.

    Attributes:
        index: position of the item being processed when the batch stopped
            (len(batch) when cancellation arrived after the last commit)
        item: that item, or None past the end of the batch
        applied: number of items applied before the failure
        committed: number of those items that are durably committed. Inside
            a transaction nothing is committed yet: committed is 0 and the
            transaction owner decides the fate of the applied items.
        not_applied: number of items (including the failing one) left unapplied
        cause: the underlying error
    """
    code = "bulk_operation_failed"

    def __init__(
        self,
        index: int,
        item: Any,
        committed: int,
        total: int,
        cause: BaseException,
        applied: Optional[int] = None,
    ):
        inner = cause if isinstance(cause, RBACError) else None
        super().__init__(
            f"bulk operation stopped at item {index}: {cause}",
            user_id=getattr(item, "user_id", None),
            role=getattr(item, "role", None),
            scope=getattr(item, "scope", None),
            scope_id=getattr(item, "scope_id", None),
            actor_id=inner.actor_id if inner else None,
        )
        self.index = index
        self.item = item
        self.committed = committed
        self.applied = committed if applied is None else applied
        self.total = total
        self.not_applied = total - self.applied
        self.cause = cause
        self.retryable = bool(inner and inner.retryable)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            index=self.index,
            applied=self.applied,
            committed=self.committed,
            not_applied=self.not_applied,
            cause=self.cause.to_dict() if isinstance(self.cause, RBACError) else str(self.cause),
        )
        return data
