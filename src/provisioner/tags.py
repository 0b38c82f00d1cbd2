"""Tag and set reconciliation.

Reconciliation is always incremental: a diff lists the keys to write and the
keys to delete, and equal pairs are never touched. Reapplying the same
desired tags therefore costs zero remote calls.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .diagnostics import DiagnosticCollector, join_path


@dataclass(frozen=True)
class TagDiff:
    """Changes needed to turn an observed tag set into the desired one.

    Attributes:
        to_add: Keys to write, with their new value (new keys and changed values).
        to_remove: Keys present on the resource but not desired.
    """

    to_add: dict[str, str] = field(default_factory=dict)
    to_remove: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def diff_tags(
    desired: Mapping[str, str] | None,
    observed: Mapping[str, str] | None,
    ignore: Callable[[str], bool] | None = None,
) -> TagDiff:
    """Diff a desired tag set against an observed one.

    A desired value of None means the caller did not specify tags and yields
    an empty diff whatever is observed. An empty mapping means "no tags" and
    removes everything observed, except keys for which ``ignore`` is true.
    """
    if desired is None:
        return TagDiff()

    current = dict(observed or {})
    to_add = {key: value for key, value in desired.items() if current.get(key) != value}
    to_remove = frozenset(
        key for key in current if key not in desired and not (ignore and ignore(key))
    )
    return TagDiff(to_add=to_add, to_remove=to_remove)


@dataclass(frozen=True)
class SetDiff:
    """Members to add and to remove for a set-valued property."""

    to_add: list[Any] = field(default_factory=list)
    to_remove: list[Any] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def _default_key(item: Any) -> str:
    if hasattr(item, "model_dump"):
        item = item.model_dump(mode="json")
    return json.dumps(item, sort_keys=True, default=str)


def diff_sets(
    desired: Iterable[Any] | None,
    observed: Iterable[Any] | None,
    key: Callable[[Any], Any] = _default_key,
) -> SetDiff:
    """Diff two collections compared as sets, keeping input order in the result.

    Same None rule as diff_tags: an unspecified desired collection is left alone.
    """
    if desired is None:
        return SetDiff()

    desired_items = list(desired)
    observed_items = list(observed or [])
    desired_keys = {key(item) for item in desired_items}
    observed_keys = {key(item) for item in observed_items}

    to_add: list[Any] = []
    seen: set[Any] = set()
    for item in desired_items:
        k = key(item)
        if k not in observed_keys and k not in seen:
            to_add.append(item)
            seen.add(k)

    to_remove = [item for item in observed_items if key(item) not in desired_keys]
    return SetDiff(to_add=to_add, to_remove=to_remove)


# =============================================================================
# Vendor tag shapes
# =============================================================================


def to_aws_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    """Convert a mapping to the EC2 [{"Key": ..., "Value": ...}] shape."""
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def to_aws_tag_keys(keys: Iterable[str]) -> list[dict[str, str]]:
    """Shape for DeleteTags: keys only, so any value is removed."""
    return [{"Key": key} for key in sorted(keys)]


def from_aws_tags(tags: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


def aws_tag_specifications(
    resource_type: str, tags: Mapping[str, str] | None
) -> list[dict[str, Any]]:
    """TagSpecifications for EC2 create calls, empty when there is nothing to set."""
    if not tags:
        return []
    return [{"ResourceType": resource_type, "Tags": to_aws_tags(tags)}]


# =============================================================================
# Tag validation
# =============================================================================

AWS_MAX_TAGS = 50
AWS_MAX_TAG_KEY_LENGTH = 128
AWS_MAX_TAG_VALUE_LENGTH = 256
AWS_RESERVED_TAG_PREFIX = "aws:"

AZURE_MAX_TAGS = 50
AZURE_MAX_TAG_KEY_LENGTH = 512
AZURE_MAX_TAG_VALUE_LENGTH = 256
AZURE_FORBIDDEN_TAG_KEY_CHARS = frozenset("<>%&\\?/")


def validate_aws_tags(collector: DiagnosticCollector, tags: Mapping[str, str] | None) -> None:
    if tags is None:
        return
    if len(tags) > AWS_MAX_TAGS:
        collector.error(f"At most {AWS_MAX_TAGS} tags are allowed", "tags")
    for key, value in tags.items():
        path = join_path("tags", key)
        if not key or len(key) > AWS_MAX_TAG_KEY_LENGTH:
            collector.error(
                f"Tag key must be between 1 and {AWS_MAX_TAG_KEY_LENGTH} characters", path
            )
        elif key.lower().startswith(AWS_RESERVED_TAG_PREFIX):
            collector.error("Tag keys starting with 'aws:' are reserved", path)
        if len(value) > AWS_MAX_TAG_VALUE_LENGTH:
            collector.error(
                f"Tag value must be at most {AWS_MAX_TAG_VALUE_LENGTH} characters", path
            )


def validate_azure_tags(collector: DiagnosticCollector, tags: Mapping[str, str] | None) -> None:
    if tags is None:
        return
    if len(tags) > AZURE_MAX_TAGS:
        collector.error(f"At most {AZURE_MAX_TAGS} tags are allowed", "tags")
    for key, value in tags.items():
        path = join_path("tags", key)
        if not key or len(key) > AZURE_MAX_TAG_KEY_LENGTH:
            collector.error(
                f"Tag key must be between 1 and {AZURE_MAX_TAG_KEY_LENGTH} characters", path
            )
        elif AZURE_FORBIDDEN_TAG_KEY_CHARS & set(key):
            collector.error(
                "Tag key contains a forbidden character",
                path,
                detail="Forbidden: " + " ".join(sorted(AZURE_FORBIDDEN_TAG_KEY_CHARS)),
            )
        if len(value) > AZURE_MAX_TAG_VALUE_LENGTH:
            collector.error(
                f"Tag value must be at most {AZURE_MAX_TAG_VALUE_LENGTH} characters", path
            )
