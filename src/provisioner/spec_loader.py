"""Resource document loading with validation.

A document file holds one or more YAML documents, each shaped::

    type: aws:EbsVolume
    name: data-volume
    spec:
      availability_zone: us-east-1a
      size: 10

Schema problems (unknown type, unknown field, wrong value type) across the
whole file are reported together as one ValidationFailed. Semantic checks are
left to each handler's validate().
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .diagnostics import Diagnostic, join_path
from .errors import InvalidArgument, ValidationFailed
from .state import ResourceSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a document file cannot be read or parsed."""

    pass


class _DocumentEnvelope(BaseModel):
    model_config = {"extra": "forbid"}

    type: str
    name: str | None = None
    spec: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ResourceDocument:
    """One loaded resource document."""

    type_name: str
    name: str | None
    spec: ResourceSpec
    index: int = 0

    @property
    def label(self) -> str:
        return self.name or f"document[{self.index}]"

    def to_dict(self, spec: ResourceSpec | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type_name}
        if self.name:
            data["name"] = self.name
        data["spec"] = (spec or self.spec).model_dump(mode="json", exclude_none=True)
        return data


def _read_file(path: Path) -> str:
    if not path.exists():
        raise SpecLoadError(f"Document file not found: {path}")

    # Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat document file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Document file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read document file {path}: {e}") from e


def _schema_diagnostics(
    label: str, error: ValidationError, prefix: str | None = None
) -> list[Diagnostic]:
    diagnostics = []
    for item in error.errors():
        path = join_path(label, prefix, *item["loc"])
        diagnostics.append(Diagnostic.error(item["msg"], path))
    return diagnostics


def parse_documents(
    content: str,
    spec_type: Callable[[str], type[ResourceSpec]],
    source: str = "<string>",
) -> list[ResourceDocument]:
    """Parse YAML content into typed resource documents.

    Args:
        content: YAML text, possibly holding several documents.
        spec_type: Resolves a type name to its ResourceSpec class; raises
            InvalidArgument for unknown types.
        source: Name used in error messages.

    Raises:
        SpecLoadError: Invalid YAML or a document that is not a mapping.
        ValidationFailed: Schema errors in any document, all batched.
    """
    try:
        raw_documents = [d for d in yaml.safe_load_all(content) if d is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {source}: {e}") from e

    documents: list[ResourceDocument] = []
    diagnostics: list[Diagnostic] = []

    for index, raw in enumerate(raw_documents):
        if not isinstance(raw, dict):
            raise SpecLoadError(f"Document {index} in {source} must be a YAML mapping")

        label = str(raw.get("name") or f"document[{index}]")
        try:
            envelope = _DocumentEnvelope.model_validate(raw)
        except ValidationError as e:
            diagnostics.extend(_schema_diagnostics(label, e))
            continue

        try:
            spec_class = spec_type(envelope.type)
        except InvalidArgument as e:
            diagnostics.append(Diagnostic.error(str(e), join_path(label, "type")))
            continue

        try:
            spec = spec_class.model_validate(envelope.spec)
        except ValidationError as e:
            diagnostics.extend(_schema_diagnostics(label, e, "spec"))
            continue

        documents.append(
            ResourceDocument(type_name=envelope.type, name=envelope.name, spec=spec, index=index)
        )

    if diagnostics:
        raise ValidationFailed(diagnostics, f"Schema validation failed for {source}")

    if not documents:
        raise SpecLoadError(f"No resource documents found in {source}")

    return documents


def load_documents(
    path: Path, spec_type: Callable[[str], type[ResourceSpec]]
) -> list[ResourceDocument]:
    """Load and parse a resource document file."""
    content = _read_file(path)
    documents = parse_documents(content, spec_type, str(path))
    logger.info(
        "Loaded resource documents",
        extra={"path": str(path), "document_count": len(documents)},
    )
    return documents


def dump_documents(path: Path, documents: list[dict[str, Any]]) -> None:
    """Write resource documents back as a multi-document YAML file."""
    try:
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump_all(documents, f, sort_keys=False, default_flow_style=False)
    except OSError as e:
        raise SpecLoadError(f"Failed to write document file {path}: {e}") from e
    logger.info(
        "Wrote resource documents",
        extra={"path": str(path), "document_count": len(documents)},
    )
