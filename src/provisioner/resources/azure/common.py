"""Helpers shared by the ARM-backed handlers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from azure.mgmt.core.tools import parse_resource_id
from azure.mgmt.resource.resources.models import Tags, TagsPatchResource

from ...reconciler import OperationContext
from ...tags import TagDiff

logger = logging.getLogger(__name__)

AZURE_LOCATION_PATTERN = r"[a-z0-9]+"

# ARM provisioning states
SUCCEEDED = "Succeeded"
FAILED = "Failed"


def split_resource_id(resource_id: str) -> tuple[str | None, str | None]:
    """Return (resource group, name) parsed from an ARM resource id."""
    parsed = parse_resource_id(resource_id)
    return parsed.get("resource_group"), parsed.get("name")


async def apply_azure_tags(
    client: Any,
    scope: str,
    observed_tags: Mapping[str, str] | None,
    diff: TagDiff,
    ctx: OperationContext,
) -> None:
    """Patch tags at a resource scope: one Delete and one Merge at most.

    Keys outside the diff are never touched.
    """
    current = dict(observed_tags or {})

    if diff.to_remove:
        removal = {key: current.get(key, "") for key in sorted(diff.to_remove)}
        poller = await ctx.call(
            client.tags.begin_update_at_scope,
            scope,
            TagsPatchResource(operation="Delete", properties=Tags(tags=removal)),
        )
        await ctx.call(poller.result)

    if diff.to_add:
        poller = await ctx.call(
            client.tags.begin_update_at_scope,
            scope,
            TagsPatchResource(operation="Merge", properties=Tags(tags=dict(diff.to_add))),
        )
        await ctx.call(poller.result)

    logger.debug(
        "Patched tags at scope",
        extra={
            "scope": scope,
            "tags_added": sorted(diff.to_add),
            "tags_removed": sorted(diff.to_remove),
        },
    )
