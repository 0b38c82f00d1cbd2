"""Error taxonomy surfaced by lifecycle operations.

Every failure a caller can observe is one of these types. Vendor SDK errors
are translated at the reconciler boundary: absence becomes the ABSENT marker
(or ResourceNotFound for update), everything else becomes FatalError with the
original attached as ``__cause__``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .classify import ErrorClass
    from .diagnostics import Diagnostic


class ProvisionerError(Exception):
    """Base class for all lifecycle errors."""

    pass


class InvalidArgument(ProvisionerError):
    """Raised when an operation is invoked with unusable input.

    For example a read without any identifier, or a create retried on a
    resource whose previous create failed without the caller forcing it.
    """

    pass


class ValidationFailed(ProvisionerError):
    """Raised when a spec has at least one error diagnostic.

    Never touches the network. Carries the complete diagnostic batch.
    """

    def __init__(self, diagnostics: list[Diagnostic], message: str | None = None) -> None:
        self.diagnostics = list(diagnostics)
        errors = [d for d in self.diagnostics if d.is_error]
        summary = message or f"Validation failed with {len(errors)} error(s)"
        details = "\n  - ".join(str(d) for d in errors)
        super().__init__(f"{summary}:\n  - {details}" if details else summary)


class ResourceNotFound(ProvisionerError):
    """Raised when update targets a resource that does not exist."""

    pass


class ConvergenceError(ProvisionerError):
    """Base class for polling outcomes that did not reach the target state.

    Attributes:
        description: What the poller was waiting for.
        last_observed: Last value returned by the poll function, if any.
        attempts: Number of polls performed.
    """

    def __init__(
        self,
        message: str,
        *,
        description: str,
        last_observed: Any = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.description = description
        self.last_observed = last_observed
        self.attempts = attempts


class ConvergenceTimeout(ConvergenceError):
    """The remote accepted the request but never reached the target state in budget."""

    pass


class ConvergenceFailed(ConvergenceError):
    """The remote reported an explicit terminal failure state."""

    pass


class Cancelled(ProvisionerError):
    """The caller cancelled the operation while it was waiting."""

    def __init__(self, message: str, *, last_observed: Any = None) -> None:
        super().__init__(message)
        self.last_observed = last_observed


class FatalError(ProvisionerError):
    """Any vendor error not recognized as absence.

    Attributes:
        cause: The original vendor exception.
        classification: How the Not-Found Normalizer classified it.
    """

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        classification: ErrorClass | None = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.classification = classification

    @property
    def retryable(self) -> bool:
        """True when the vendor error was classified as transient."""
        from .classify import ErrorClass

        return self.classification == ErrorClass.TRANSIENT


class IncompleteStateError(FatalError):
    """A successful read returned without every required cloud-managed property."""

    def __init__(self, resource_type: str, missing: list[str]) -> None:
        super().__init__(
            f"{resource_type} read returned incomplete state, missing: {', '.join(missing)}"
        )
        self.resource_type = resource_type
        self.missing = list(missing)
