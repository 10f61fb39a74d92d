from typing import Any, List, Optional, Tuple


class DocModelError(Exception):
    """Base exception for every failure raised by docmodel."""

    def __init__(
        self,
        operation: str,
        target: Optional[Any] = None,
        message: str = "",
    ):
        self.operation = operation
        self.target = target
        self.message = message
        where = "" if target is None else f" for '{target}'"
        super().__init__(f"[{operation}]{where}: {message}")


class ValidationError(DocModelError):
    """Raised when a value does not match its declared schema."""

    def __init__(
        self,
        operation: str,
        issues: List[Tuple[str, str]],
        target: Optional[Any] = None,
    ):
        self.issues = issues
        details = "; ".join(f"{path}: {reason}" for path, reason in issues)
        super().__init__(operation, target, f"invalid value ({details})")


class ConfigurationError(DocModelError):
    """Raised when something is used before it has been bound."""


class ExistenceError(DocModelError):
    """Raised when a document expected to exist was not found."""


class CountMismatchError(DocModelError):
    """Raised when a bulk fetch returned fewer documents than requested."""

    def __init__(self, operation: str, requested: int, returned: int, target=None):
        self.requested = requested
        self.returned = returned
        super().__init__(
            operation,
            target,
            f"requested {requested} documents but {returned} were returned",
        )


class TransportError(DocModelError):
    """Raised when the execution collaborator rejects a query."""

    def __init__(
        self,
        operation: str,
        message: str,
        target: Optional[Any] = None,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        errors: Optional[List[Any]] = None,
    ):
        self.cause = cause
        self.status_code = status_code
        self.errors = errors or []
        super().__init__(operation, target, message)
