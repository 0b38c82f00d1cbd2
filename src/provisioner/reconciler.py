"""Resource reconciliation engine.

Every resource type is driven through the same lifecycle by one Reconciler.
A ResourceHandler supplies only the vendor-specific pieces: validation rules,
the raw fetch, and the create/update/delete/tag calls. The Reconciler owns
the shared discipline:

1. Validate before any mutating call; report every problem at once
2. Normalize vendor "not found" errors into the ABSENT marker
3. Treat terminal-deleted records as absent
4. Reject incomplete observed state
5. Update only the fields that changed; refuse immutable changes
6. Reconcile tags incrementally, and only when tags were specified
7. Make delete idempotent

Vendor SDK errors never leave this module raw: they become ABSENT, or a
FatalError chained to the original exception.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, TypeVar

from .classify import VENDOR_ERRORS, ErrorClass, ErrorClassifier
from .config import DEFAULT_POLL_INTERVAL_SCALE, ProviderConfig
from .convergence import CancellationToken, ConvergenceTarget, wait_for
from .diagnostics import Diagnostic, has_errors
from .errors import (
    Cancelled,
    ConvergenceFailed,
    ConvergenceTimeout,
    FatalError,
    IncompleteStateError,
    InvalidArgument,
    ResourceNotFound,
    ValidationFailed,
)
from .state import ABSENT, Absent, ResourceSpec, is_absent
from .tags import TagDiff, diff_tags

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Operation(str, Enum):
    """Lifecycle operations."""

    VALIDATE = "validate"
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class LifecycleState(str, Enum):
    """Generic per-resource lifecycle state."""

    UNKNOWN = "unknown"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    ABSENT = "absent"

    def can_transition(self, target: LifecycleState) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.UNKNOWN: frozenset(
        {LifecycleState.PENDING, LifecycleState.READY, LifecycleState.ABSENT}
    ),
    LifecycleState.PENDING: frozenset({LifecycleState.READY, LifecycleState.FAILED}),
    LifecycleState.READY: frozenset({LifecycleState.READY, LifecycleState.ABSENT}),
    LifecycleState.ABSENT: frozenset({LifecycleState.PENDING, LifecycleState.ABSENT}),
    # Failed is terminal until the caller deletes or explicitly forces a new create
    LifecycleState.FAILED: frozenset({LifecycleState.ABSENT}),
}


class Outcome(str, Enum):
    """Orchestrator-facing result of one operation."""

    SUCCESS = "success"
    ABSENT = "absent"
    VALIDATION_FAILED = "validation_failed"
    NOT_FOUND = "not_found"
    CONVERGENCE_TIMEOUT = "convergence_timeout"
    CONVERGENCE_FAILED = "convergence_failed"
    CANCELLED = "cancelled"
    FATAL = "fatal"
    INVALID_ARGUMENT = "invalid_argument"


class DeleteStatus(str, Enum):
    """Successful delete results."""

    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"


@dataclass
class OperationContext:
    """Per-call capabilities handed to a handler.

    Lives for exactly one lifecycle operation. Carries the cancellation
    signal and poll scaling so handlers never sleep or classify on their own.
    """

    handler: ResourceHandler
    operation: Operation
    cancel: CancellationToken = field(default_factory=CancellationToken)
    poll_interval_scale: float = DEFAULT_POLL_INTERVAL_SCALE
    max_wait_seconds: float | None = None

    @property
    def resource_type(self) -> str:
        return self.handler.type_name

    async def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call on the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def classify(self, error: BaseException) -> ErrorClass:
        return self.handler.classifier.classify(error)

    def is_not_found(self, error: BaseException) -> bool:
        return self.classify(error) is ErrorClass.NOT_FOUND

    async def converge(self, target: ConvergenceTarget[T]) -> T:
        """Wait for a target using this call's scaling and cancellation."""
        scaled = target.scaled(self.poll_interval_scale, self.max_wait_seconds)
        return await wait_for(scaled, self.cancel)

    async def probe(self, spec: ResourceSpec) -> ResourceSpec | Absent:
        """Fetch the remote record, returning ABSENT when it does not exist.

        Terminal-state records are returned as-is so that convergence
        predicates can see them.
        """
        try:
            observed = await self.call(self.handler.fetch, spec)
        except VENDOR_ERRORS as e:
            if self.is_not_found(e):
                return ABSENT
            raise
        return ABSENT if observed is None else observed

    @staticmethod
    def gone(observed: ResourceSpec | Absent) -> bool:
        """Convergence predicate for delete: absent or terminal."""
        return is_absent(observed) or observed.is_terminal()


class ResourceHandler(Protocol):
    """Vendor-facing half of a resource type.

    Handlers are independent implementations of this protocol. fetch() is a
    plain blocking call and is run on an executor by the engine; the other
    operations are coroutines receiving an OperationContext.

    Attributes:
        type_name: Registry name, e.g. "aws:EbsVolume".
        spec_type: The ResourceSpec subclass this handler manages.
        classifier: Maps this resource's vendor errors to an ErrorClass.
        create_idempotent: True when retrying create after an unknown
            outcome cannot produce a duplicate remote object, even without
            a caller-supplied idempotency token.
    """

    type_name: str
    spec_type: type[ResourceSpec]
    classifier: ErrorClassifier
    create_idempotent: bool

    def validate(self, spec: ResourceSpec) -> list[Diagnostic]:
        """Pure validation; no network access."""
        ...

    def fetch(self, spec: ResourceSpec) -> ResourceSpec | None:
        """Fetch by cloud id if set, else by natural key. None if no record."""
        ...

    async def create(self, spec: ResourceSpec, ctx: OperationContext) -> ResourceSpec:
        """Submit create, await readiness, and return state carrying the cloud id."""
        ...

    async def update(
        self,
        desired: ResourceSpec,
        observed: ResourceSpec,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        """Apply the change set, converging between dependent steps."""
        ...

    async def delete(self, observed: ResourceSpec, ctx: OperationContext) -> None:
        """Release dependents, submit delete and await absence."""
        ...

    async def apply_tags(
        self, observed: ResourceSpec, diff: TagDiff, ctx: OperationContext
    ) -> None:
        ...


@dataclass
class OperationResult:
    """Result of a single lifecycle operation."""

    resource_type: str
    operation: Operation
    identity: str = "<unidentified>"
    outcome: Outcome = Outcome.SUCCESS
    state: LifecycleState = LifecycleState.UNKNOWN
    observed: ResourceSpec | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    delete_status: DeleteStatus | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.ABSENT)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.resource_type,
            "operation": self.operation.value,
            "identity": self.identity,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.observed is not None:
            data["observed"] = self.observed.model_dump(mode="json", exclude_none=True)
        if self.diagnostics:
            data["diagnostics"] = [d.to_dict() for d in self.diagnostics]
        if self.delete_status is not None:
            data["delete_status"] = self.delete_status.value
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = type(self.error).__name__
        return data


class Reconciler:
    """Drives one resource type through the lifecycle.

    Stateless per call: nothing about a resource is retained between
    operations, so one instance may serve concurrent operations on different
    resources.
    """

    def __init__(self, handler: ResourceHandler, config: ProviderConfig | None = None) -> None:
        self._handler = handler
        self._config = config or ProviderConfig()

    @property
    def handler(self) -> ResourceHandler:
        return self._handler

    @property
    def type_name(self) -> str:
        return self._handler.type_name

    def _context(self, operation: Operation, cancel: CancellationToken | None) -> OperationContext:
        return OperationContext(
            handler=self._handler,
            operation=operation,
            cancel=cancel or CancellationToken(),
            poll_interval_scale=self._config.poll_interval_scale,
            max_wait_seconds=self._config.max_wait_seconds,
        )

    def _fatal(self, ctx: OperationContext, error: BaseException) -> FatalError:
        classification = ctx.classify(error)
        return FatalError(
            f"{self.type_name} {ctx.operation.value} failed: {error}",
            cause=error,
            classification=classification,
        )

    async def _guard(self, ctx: OperationContext, awaitable: Any) -> Any:
        """Await a handler step, translating raw vendor errors to FatalError."""
        try:
            return await awaitable
        except VENDOR_ERRORS as e:
            raise self._fatal(ctx, e) from e

    def _require_identity(self, spec: ResourceSpec, operation: Operation) -> None:
        if spec.has_identity():
            return
        key = ", ".join(spec.natural_key_fields) or "none"
        raise InvalidArgument(
            f"{self.type_name} {operation.value} requires {spec.id_field or 'a cloud id'} "
            f"or a natural key ({key})"
        )

    # -------------------------------------------------------------------------
    # Validate
    # -------------------------------------------------------------------------

    def validate(self, spec: ResourceSpec) -> list[Diagnostic]:
        """Return every diagnostic for the spec. Never touches the network."""
        if not isinstance(spec, self._handler.spec_type):
            return [
                Diagnostic.error(
                    f"Expected {self._handler.spec_type.__name__}, got {type(spec).__name__}"
                )
            ]
        return list(self._handler.validate(spec))

    def _require_valid(self, spec: ResourceSpec) -> None:
        diagnostics = self.validate(spec)
        if has_errors(diagnostics):
            raise ValidationFailed(diagnostics, f"{self.type_name} validation failed")

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def _observe(self, spec: ResourceSpec, ctx: OperationContext) -> ResourceSpec | Absent:
        observed = await self._guard(ctx, ctx.probe(spec))
        if is_absent(observed):
            return ABSENT
        if observed.is_terminal():
            logger.debug(
                "Terminal state reads as absent",
                extra={
                    "resource_type": self.type_name,
                    "identity": observed.describe_identity(),
                    "remote_state": getattr(observed, observed.state_field or "", None),
                },
            )
            return ABSENT
        return observed

    async def _read(self, spec: ResourceSpec, ctx: OperationContext) -> ResourceSpec | Absent:
        observed = await self._observe(spec, ctx)
        if is_absent(observed):
            return ABSENT
        missing = observed.missing_cloud_fields()
        if missing:
            raise IncompleteStateError(self.type_name, missing)
        return observed

    async def read(
        self, spec: ResourceSpec, cancel: CancellationToken | None = None
    ) -> ResourceSpec | Absent:
        """Read the observed state, or ABSENT if the resource does not exist.

        Raises:
            InvalidArgument: The spec has neither a cloud id nor a natural key.
            FatalError: Any vendor error other than not-found.
        """
        self._require_identity(spec, Operation.READ)
        ctx = self._context(Operation.READ, cancel)
        return await self._read(spec, ctx)

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self, spec: ResourceSpec, cancel: CancellationToken | None = None
    ) -> ResourceSpec:
        """Create the resource, await readiness, then reconcile tags.

        Raises:
            ValidationFailed: The spec has error diagnostics. No remote call is made.
            ConvergenceFailed, ConvergenceTimeout, Cancelled: From the readiness wait.
            FatalError: Any vendor error.
        """
        self._require_valid(spec)
        ctx = self._context(Operation.CREATE, cancel)

        created = await self._guard(ctx, self._handler.create(spec, ctx))
        desired = spec.with_identity_from(created)

        observed = await self._read(desired, ctx)
        if is_absent(observed):
            raise FatalError(
                f"{self.type_name} {desired.describe_identity()} vanished after create"
            )

        return await self._reconcile_tags(desired, observed, ctx)

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def _immutable_violations(
        self, changes: dict[str, tuple[Any, Any]]
    ) -> list[Diagnostic]:
        immutable = self._handler.spec_type.immutable_fields
        return [
            Diagnostic.error(
                f"{name} cannot be changed in place; the resource requires replacement",
                path=name,
                detail=f"observed {old!r}, desired {new!r}",
            )
            for name, (old, new) in changes.items()
            if name in immutable
        ]

    async def update(
        self, spec: ResourceSpec, cancel: CancellationToken | None = None
    ) -> ResourceSpec:
        """Apply the minimal set of changes and return the freshly read state.

        Raises:
            ValidationFailed: Invalid spec, or a change to an immutable field.
            ResourceNotFound: The resource does not exist.
            FatalError: Any vendor error.
        """
        self._require_valid(spec)
        self._require_identity(spec, Operation.UPDATE)
        ctx = self._context(Operation.UPDATE, cancel)

        observed = await self._read(spec, ctx)
        if is_absent(observed):
            raise ResourceNotFound(f"{self.type_name} {spec.describe_identity()} does not exist")

        desired = spec.with_identity_from(observed)
        changes = desired.diff_inputs(observed)

        violations = self._immutable_violations(changes)
        if violations:
            raise ValidationFailed(violations, f"{self.type_name} update requires replacement")

        if changes:
            logger.info(
                "Applying field changes",
                extra={
                    "resource_type": self.type_name,
                    "identity": desired.describe_identity(),
                    "fields": sorted(changes),
                },
            )
            await self._guard(ctx, self._handler.update(desired, observed, changes, ctx))
            observed = await self._read(desired, ctx)
            if is_absent(observed):
                raise ResourceNotFound(
                    f"{self.type_name} {desired.describe_identity()} disappeared during update"
                )

        return await self._reconcile_tags(desired, observed, ctx)

    async def _reconcile_tags(
        self, desired: ResourceSpec, observed: ResourceSpec, ctx: OperationContext
    ) -> ResourceSpec:
        diff = diff_tags(desired.tags, observed.tags, ignore=desired.is_reserved_tag)
        if diff.is_empty:
            return observed

        logger.info(
            "Reconciling tags",
            extra={
                "resource_type": self.type_name,
                "identity": observed.describe_identity(),
                "tags_added": sorted(diff.to_add),
                "tags_removed": sorted(diff.to_remove),
            },
        )
        await self._guard(ctx, self._handler.apply_tags(observed, diff, ctx))

        refreshed = await self._read(desired, ctx)
        if is_absent(refreshed):
            raise ResourceNotFound(
                f"{self.type_name} {desired.describe_identity()} disappeared during tagging"
            )
        return refreshed

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(
        self, spec: ResourceSpec, cancel: CancellationToken | None = None
    ) -> DeleteStatus:
        """Delete the resource. Deleting an absent resource succeeds.

        Raises:
            InvalidArgument: The spec has neither a cloud id nor a natural key.
            ConvergenceTimeout, Cancelled: From the wait for absence.
            FatalError: Any vendor error other than not-found.
        """
        self._require_identity(spec, Operation.DELETE)
        ctx = self._context(Operation.DELETE, cancel)

        observed = await self._observe(spec, ctx)
        if is_absent(observed):
            return DeleteStatus.ALREADY_ABSENT

        try:
            await self._handler.delete(observed, ctx)
        except VENDOR_ERRORS as e:
            # Deleted concurrently between the read and the delete call
            if ctx.is_not_found(e):
                return DeleteStatus.ALREADY_ABSENT
            raise self._fatal(ctx, e) from e
        return DeleteStatus.DELETED

    # -------------------------------------------------------------------------
    # Orchestrator surface
    # -------------------------------------------------------------------------

    async def execute(
        self,
        operation: Operation,
        spec: ResourceSpec,
        *,
        cancel: CancellationToken | None = None,
        previous_state: LifecycleState = LifecycleState.UNKNOWN,
        force: bool = False,
    ) -> OperationResult:
        """Run one operation and report it as an OperationResult.

        Never raises the error taxonomy; the error is attached to the result.

        Args:
            operation: The lifecycle operation.
            spec: Desired state (or identity, for read/delete).
            cancel: Optional cancellation signal.
            previous_state: Lifecycle state the caller last recorded.
            force: Allow create on a resource whose last create failed.
        """
        result = OperationResult(
            resource_type=self.type_name,
            operation=operation,
            identity=spec.describe_identity(),
            state=previous_state,
        )
        logger.info(
            "Starting operation",
            extra={
                "resource_type": self.type_name,
                "operation": operation.value,
                "identity": result.identity,
                "previous_state": previous_state.value,
            },
        )

        try:
            match operation:
                case Operation.VALIDATE:
                    result.diagnostics = self.validate(spec)
                    if has_errors(result.diagnostics):
                        result.outcome = Outcome.VALIDATION_FAILED

                case Operation.CREATE:
                    self._check_create_allowed(previous_state, force)
                    result.state = LifecycleState.PENDING
                    result.observed = await self.create(spec, cancel)
                    result.state = LifecycleState.READY

                case Operation.READ:
                    observed = await self.read(spec, cancel)
                    if is_absent(observed):
                        result.outcome = Outcome.ABSENT
                        result.state = LifecycleState.ABSENT
                    else:
                        result.observed = observed
                        result.state = LifecycleState.READY

                case Operation.UPDATE:
                    result.observed = await self.update(spec, cancel)
                    result.state = LifecycleState.READY

                case Operation.DELETE:
                    result.delete_status = await self.delete(spec, cancel)
                    if result.delete_status is DeleteStatus.ALREADY_ABSENT:
                        result.outcome = Outcome.ABSENT
                    result.state = LifecycleState.ABSENT

        except ValidationFailed as e:
            result.outcome = Outcome.VALIDATION_FAILED
            result.diagnostics = e.diagnostics
            result.error = e
        except InvalidArgument as e:
            result.outcome = Outcome.INVALID_ARGUMENT
            result.error = e
        except ResourceNotFound as e:
            result.outcome = Outcome.NOT_FOUND
            result.state = LifecycleState.ABSENT
            result.error = e
        except (ConvergenceTimeout, ConvergenceFailed) as e:
            result.outcome = (
                Outcome.CONVERGENCE_TIMEOUT
                if isinstance(e, ConvergenceTimeout)
                else Outcome.CONVERGENCE_FAILED
            )
            if isinstance(e.last_observed, ResourceSpec):
                result.observed = e.last_observed
            if operation in (Operation.CREATE, Operation.UPDATE):
                result.state = LifecycleState.FAILED
            result.error = e
        except Cancelled as e:
            result.outcome = Outcome.CANCELLED
            if isinstance(e.last_observed, ResourceSpec):
                result.observed = e.last_observed
            result.error = e
        except FatalError as e:
            result.outcome = Outcome.FATAL
            if operation is Operation.CREATE:
                result.state = previous_state
            result.error = e
        except Exception as e:
            logger.exception(
                "Unexpected error during operation",
                extra={"resource_type": self.type_name, "operation": operation.value},
            )
            result.outcome = Outcome.FATAL
            if operation is Operation.CREATE:
                result.state = previous_state
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    def _check_create_allowed(self, previous_state: LifecycleState, force: bool) -> None:
        if previous_state is LifecycleState.FAILED:
            if force:
                logger.warning(
                    "Forcing create after a failed create",
                    extra={"resource_type": self.type_name},
                )
                return
            raise InvalidArgument(
                f"{self.type_name} previously failed to create; delete it or retry with force"
            )
        if not previous_state.can_transition(LifecycleState.PENDING):
            raise InvalidArgument(
                f"{self.type_name} cannot be created from state {previous_state.value}"
            )

    def _log_result(self, result: OperationResult) -> None:
        """Log operation result with structured data."""
        extra: dict[str, Any] = {
            "resource_type": result.resource_type,
            "operation": result.operation.value,
            "identity": result.identity,
            "outcome": result.outcome.value,
            "state": result.state.value,
            "duration_seconds": result.duration_seconds,
        }
        if result.diagnostics:
            extra["diagnostic_count"] = len(result.diagnostics)
        if result.delete_status is not None:
            extra["delete_status"] = result.delete_status.value

        if result.error is not None:
            extra["error"] = str(result.error)
            if result.outcome in (Outcome.VALIDATION_FAILED, Outcome.CANCELLED):
                logger.warning("Operation did not complete", extra=extra)
            else:
                logger.error("Operation failed", extra=extra)
        elif result.outcome is Outcome.VALIDATION_FAILED:
            logger.warning("Operation result", extra=extra)
        else:
            logger.info("Operation result", extra=extra)
