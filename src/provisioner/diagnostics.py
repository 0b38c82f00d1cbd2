"""Validation findings and the collector used by every resource validator.

Validators never stop at the first problem. Each check appends to a
DiagnosticCollector so the caller receives the complete list in one pass,
with a field path for every finding.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Diagnostic severity levels."""

    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Diagnostic:
    """A single validation finding.

    Attributes:
        severity: ERROR blocks create/update, WARNING is informational.
        message: Human-readable description of the problem.
        path: Dotted path of the offending input (e.g. "ingress_rules.0.from_port").
        detail: Optional hint, such as the list of valid values.
    """

    severity: Severity
    message: str
    path: str | None = None
    detail: str | None = None

    @classmethod
    def error(cls, message: str, path: str | None = None, detail: str | None = None) -> Diagnostic:
        return cls(Severity.ERROR, message, path, detail)

    @classmethod
    def warning(
        cls, message: str, path: str | None = None, detail: str | None = None
    ) -> Diagnostic:
        return cls(Severity.WARNING, message, path, detail)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"severity": self.severity.value, "message": self.message}
        if self.path is not None:
            data["path"] = self.path
        if self.detail is not None:
            data["detail"] = self.detail
        return data

    def __str__(self) -> str:
        location = f"{self.path}: " if self.path else ""
        suffix = f" ({self.detail})" if self.detail else ""
        return f"[{self.severity.value}] {location}{self.message}{suffix}"


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    """Return True if any diagnostic is an error."""
    return any(d.is_error for d in diagnostics)


def join_path(*parts: str | int | None) -> str:
    """Join path segments into a dotted field path, skipping empty segments."""
    return ".".join(str(p) for p in parts if p is not None and p != "")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


class DiagnosticCollector:
    """Accumulates diagnostics for one spec.

    Each check method returns True when the check passed so validators can
    skip dependent checks (a range check on a missing value, for example)
    without short-circuiting unrelated fields.
    """

    def __init__(self, prefix: str | None = None) -> None:
        self._prefix = prefix
        self._diagnostics: list[Diagnostic] = []

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return list(self._diagnostics)

    @property
    def has_errors(self) -> bool:
        return has_errors(self._diagnostics)

    def _path(self, path: str | None) -> str | None:
        if self._prefix is None:
            return path
        return join_path(self._prefix, path)

    def child(self, prefix: str | int) -> DiagnosticCollector:
        """Return a collector writing into this one under a nested path."""
        nested = DiagnosticCollector(join_path(self._prefix, prefix))
        nested._diagnostics = self._diagnostics
        return nested

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        self._diagnostics.extend(diagnostics)

    def error(self, message: str, path: str | None = None, detail: str | None = None) -> None:
        self._diagnostics.append(Diagnostic.error(message, self._path(path), detail))

    def warning(self, message: str, path: str | None = None, detail: str | None = None) -> None:
        self._diagnostics.append(Diagnostic.warning(message, self._path(path), detail))

    def require(self, value: Any, path: str, message: str | None = None) -> bool:
        """Check that a required field is present and not blank."""
        if _is_blank(value):
            self.error(message or f"{path} is required", path)
            return False
        return True

    def check_range(
        self,
        value: int | float | None,
        path: str,
        minimum: int | float,
        maximum: int | float,
        message: str | None = None,
    ) -> bool:
        """Check an optional numeric value lies within [minimum, maximum]."""
        if value is None:
            return True
        if not (minimum <= value <= maximum):
            self.error(message or f"{path} must be between {minimum} and {maximum}", path)
            return False
        return True

    def check_length(
        self, value: str | None, path: str, minimum: int, maximum: int
    ) -> bool:
        if value is None:
            return True
        if not (minimum <= len(value) <= maximum):
            self.error(f"{path} must be between {minimum} and {maximum} characters", path)
            return False
        return True

    def check_enum(
        self, value: Any, path: str, valid: Collection[Any], message: str | None = None
    ) -> bool:
        """Check an optional value is a member of a fixed set."""
        if value is None:
            return True
        if value not in valid:
            self.error(
                message or f"Invalid {path}",
                path,
                detail="Valid values: " + ", ".join(sorted(str(v) for v in valid)),
            )
            return False
        return True

    def check_pattern(self, value: str | None, path: str, pattern: str, message: str) -> bool:
        if value is None:
            return True
        if not re.fullmatch(pattern, value):
            self.error(message, path)
            return False
        return True

    def check_cidr(
        self,
        value: str | None,
        path: str,
        min_prefix: int = 0,
        max_prefix: int = 32,
    ) -> bool:
        """Check an optional IPv4 CIDR block and its prefix length."""
        if value is None:
            return True
        if "/" not in value:
            self.error("Invalid CIDR block format", path, detail="Expected x.x.x.x/n")
            return False
        try:
            network = ipaddress.IPv4Network(value, strict=False)
        except ValueError:
            self.error("Invalid CIDR block format", path, detail="Expected x.x.x.x/n")
            return False
        if not (min_prefix <= network.prefixlen <= max_prefix):
            self.error(f"CIDR prefix length must be between /{min_prefix} and /{max_prefix}", path)
            return False
        return True

    def require_when(self, condition: bool, value: Any, path: str, message: str) -> bool:
        """Require a field only when another field takes a specific value."""
        if condition and _is_blank(value):
            self.error(message, path)
            return False
        return True

    def forbid_unless(self, condition: bool, value: Any, path: str, message: str) -> bool:
        """Reject a field that is only meaningful under a condition that does not hold."""
        if not condition and value is not None and value is not False:
            self.error(message, path)
            return False
        return True
