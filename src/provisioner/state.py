"""Desired and observed resource state.

A ResourceSpec subclass describes one resource type. The same model carries
both sides of the pair: the caller's desired configuration (input properties
set, cloud-managed properties mostly None) and the observed state produced by
a read (every required cloud-managed property populated).

Field roles are declared per type with class variables rather than inferred,
so the engine can decide identity, completeness and change sets without
knowing anything about a particular cloud.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel


class Absent(Enum):
    """Explicit "resource does not exist" result, distinct from an error."""

    ABSENT = "absent"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent.ABSENT


def is_absent(value: Any) -> bool:
    return value is ABSENT


class ResourceSpec(BaseModel):
    """Base model for every resource type.

    ``tags`` is None when the caller did not mention tags at all and ``{}``
    when the caller asked for no tags. The two are different desired states:
    only the second removes existing tags.

    Class variables:
        type_name: Registry name, e.g. "aws:EbsVolume".
        id_field: Field holding the cloud-assigned identifier.
        natural_key_fields: Fields forming the name-and-scope key.
        cloud_fields: Cloud-managed fields that every successful read must populate.
        optional_cloud_fields: Cloud-managed fields the remote may legitimately omit.
        immutable_fields: Inputs that cannot change without replacing the resource.
        create_only_fields: Inputs sent on create only and never read back.
        unordered_fields: List inputs compared as sets.
        state_field: Field carrying the remote lifecycle state, if any.
        terminal_states: Values of state_field meaning the resource is gone.
        reserved_tag_prefixes: Tag key prefixes owned by the platform. Observed
            tags under them are never removed.
    """

    model_config = {"extra": "forbid"}

    type_name: ClassVar[str] = ""
    id_field: ClassVar[str | None] = None
    natural_key_fields: ClassVar[tuple[str, ...]] = ()
    cloud_fields: ClassVar[tuple[str, ...]] = ()
    optional_cloud_fields: ClassVar[tuple[str, ...]] = ()
    immutable_fields: ClassVar[frozenset[str]] = frozenset()
    create_only_fields: ClassVar[frozenset[str]] = frozenset()
    unordered_fields: ClassVar[frozenset[str]] = frozenset()
    state_field: ClassVar[str | None] = None
    terminal_states: ClassVar[frozenset[str]] = frozenset()
    reserved_tag_prefixes: ClassVar[tuple[str, ...]] = ()

    tags: dict[str, str] | None = None

    # -------------------------------------------------------------------------
    # Field roles
    # -------------------------------------------------------------------------

    @classmethod
    def managed_fields(cls) -> frozenset[str]:
        """All cloud-managed field names, required and optional."""
        managed = set(cls.cloud_fields) | set(cls.optional_cloud_fields)
        if cls.id_field:
            managed.add(cls.id_field)
        return frozenset(managed)

    @classmethod
    def input_fields(cls) -> list[str]:
        """Caller-supplied field names, tags included, in declaration order."""
        managed = cls.managed_fields()
        return [name for name in cls.model_fields if name not in managed]

    @classmethod
    def is_reserved_tag(cls, key: str) -> bool:
        return any(key.lower().startswith(prefix) for prefix in cls.reserved_tag_prefixes)

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def cloud_id(self) -> str | None:
        if self.id_field is None:
            return None
        return getattr(self, self.id_field)

    def natural_key(self) -> tuple[Any, ...] | None:
        """Return the natural key, or None if any part of it is missing."""
        if not self.natural_key_fields:
            return None
        values = tuple(getattr(self, name) for name in self.natural_key_fields)
        if any(v is None or v == "" for v in values):
            return None
        return values

    def has_identity(self) -> bool:
        return bool(self.cloud_id()) or self.natural_key() is not None

    def describe_identity(self) -> str:
        """Short identity string for logs and messages."""
        cloud_id = self.cloud_id()
        if cloud_id:
            return cloud_id
        key = self.natural_key()
        if key is not None:
            return "/".join(str(part) for part in key)
        return "<unidentified>"

    def with_identity_from(self, observed: ResourceSpec) -> ResourceSpec:
        """Copy of this spec carrying the observed cloud identifier forward."""
        if self.id_field is None or observed.cloud_id() is None:
            return self
        return self.model_copy(update={self.id_field: observed.cloud_id()})

    def with_cloud_fields_from(self, observed: ResourceSpec) -> ResourceSpec:
        """Desired inputs unchanged, cloud-managed fields taken from observed."""
        update = {
            name: getattr(observed, name)
            for name in self.managed_fields()
            if getattr(observed, name, None) is not None
        }
        return self.model_copy(update=update)

    def without_cloud_fields(self) -> ResourceSpec:
        return self.model_copy(update={name: None for name in self.managed_fields()})

    # -------------------------------------------------------------------------
    # Observed-state checks
    # -------------------------------------------------------------------------

    def missing_cloud_fields(self) -> list[str]:
        """Required cloud-managed fields that are not populated."""
        required = list(self.cloud_fields)
        if self.id_field and self.id_field not in required:
            required.insert(0, self.id_field)
        return [name for name in required if getattr(self, name) is None]

    def is_terminal(self) -> bool:
        """True when the remote still returns a record for a deleted resource."""
        if self.state_field is None:
            return False
        return getattr(self, self.state_field) in self.terminal_states

    def input_properties(self) -> dict[str, Any]:
        """Input properties set on this spec, as JSON-compatible values."""
        data = self.model_dump(mode="json", include=set(self.input_fields()))
        return {key: value for key, value in data.items() if value is not None}

    # -------------------------------------------------------------------------
    # Change detection
    # -------------------------------------------------------------------------

    @classmethod
    def comparable(cls, name: str, value: Any) -> Any:
        """Normalize a field value before comparison. Identity by default."""
        return value

    def diff_inputs(self, observed: ResourceSpec) -> dict[str, tuple[Any, Any]]:
        """Compute the field-level change set against an observed state.

        Only inputs explicitly set on this spec take part: a None input means
        "leave as is". Tags are excluded since they have their own reconciler,
        and so are create-only inputs since the remote never reports them.

        Returns:
            Mapping of field name to (observed value, desired value).
        """
        changes: dict[str, tuple[Any, Any]] = {}
        for name in self.input_fields():
            if name == "tags" or name in self.create_only_fields:
                continue
            desired = getattr(self, name)
            if desired is None:
                continue
            current = getattr(observed, name, None)
            if not _values_equal(
                self.comparable(name, desired),
                self.comparable(name, current),
                unordered=name in self.unordered_fields,
            ):
                changes[name] = (current, desired)
        return changes


def _canonical(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, dict):
        return {k: _canonical(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    return value


def _values_equal(desired: Any, current: Any, *, unordered: bool = False) -> bool:
    left = _canonical(desired)
    right = _canonical(current)
    if unordered and isinstance(left, list) and isinstance(right, list):
        return sorted(json.dumps(v, sort_keys=True) for v in left) == sorted(
            json.dumps(v, sort_keys=True) for v in right
        )
    return left == right
