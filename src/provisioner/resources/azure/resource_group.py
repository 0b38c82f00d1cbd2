"""Azure resource group handler.

Create idempotence: guaranteed. Resource groups are created with a PUT
addressed by name, so a retried create converges on the same group.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from azure.mgmt.resource.resources.models import ResourceGroup as ArmResourceGroup

from ...classify import AzureErrorClassifier
from ...clients import LazyClient
from ...convergence import FAST_POLL, SLOW_POLL, ConvergenceTarget
from ...diagnostics import Diagnostic, DiagnosticCollector
from ...reconciler import OperationContext
from ...state import ResourceSpec, is_absent
from ...tags import TagDiff, validate_azure_tags
from .common import AZURE_LOCATION_PATTERN, FAILED, SUCCEEDED, apply_azure_tags, split_resource_id

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 90
NAME_PATTERN = r"[-\w.()]*[-\w()]"


class ResourceGroup(ResourceSpec):
    """An Azure resource group."""

    type_name: ClassVar[str] = "azure:ResourceGroup"
    id_field: ClassVar[str | None] = "id"
    natural_key_fields: ClassVar[tuple[str, ...]] = ("name",)
    cloud_fields: ClassVar[tuple[str, ...]] = ("id", "provisioning_state")
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"name", "location"})

    name: str | None = None
    location: str | None = None

    id: str | None = None
    provisioning_state: str | None = None


class ResourceGroupHandler:
    type_name = ResourceGroup.type_name
    spec_type = ResourceGroup
    classifier = AzureErrorClassifier()
    create_idempotent = True

    def __init__(self, resource: LazyClient[Any]) -> None:
        self._resource = resource

    @property
    def client(self) -> Any:
        return self._resource.get()

    def validate(self, spec: ResourceGroup) -> list[Diagnostic]:
        c = DiagnosticCollector()
        if c.require(spec.name, "name"):
            if c.check_length(spec.name, "name", 1, MAX_NAME_LENGTH):
                c.check_pattern(
                    spec.name,
                    "name",
                    NAME_PATTERN,
                    "name may contain letters, digits, '-', '_', '.', '(' and ')' "
                    "and must not end with '.'",
                )
        if c.require(spec.location, "location"):
            c.check_pattern(
                spec.location,
                "location",
                AZURE_LOCATION_PATTERN,
                "location must be a lowercase region name such as westeurope",
            )
        validate_azure_tags(c, spec.tags)
        return c.diagnostics

    @staticmethod
    def _group_name(spec: ResourceGroup) -> str | None:
        if spec.id:
            return split_resource_id(spec.id)[0]
        return spec.name or None

    def fetch(self, spec: ResourceGroup) -> ResourceGroup | None:
        name = self._group_name(spec)
        if not name:
            return None
        group = self.client.resource_groups.get(name)
        properties = getattr(group, "properties", None)
        return ResourceGroup(
            name=group.name,
            location=group.location,
            id=group.id,
            provisioning_state=getattr(properties, "provisioning_state", None),
            tags=dict(group.tags or {}),
        )

    async def create(self, spec: ResourceGroup, ctx: OperationContext) -> ResourceGroup:
        group = await ctx.call(
            self.client.resource_groups.create_or_update,
            spec.name,
            ArmResourceGroup(location=spec.location, tags=spec.tags),
        )
        logger.info(
            "Created resource group",
            extra={"resource_group": spec.name, "location": spec.location},
        )

        created = spec.model_copy(update={"id": group.id})
        return await ctx.converge(
            ConvergenceTarget.from_policy(
                f"resource group {spec.name} provisioned",
                lambda: ctx.probe(created),
                lambda o: not is_absent(o) and o.provisioning_state == SUCCEEDED,
                FAST_POLL,
                is_failed=lambda o: not is_absent(o) and o.provisioning_state == FAILED,
            )
        )

    async def update(
        self,
        desired: ResourceGroup,
        observed: ResourceGroup,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        # Every input besides tags is immutable
        return None

    async def delete(self, observed: ResourceGroup, ctx: OperationContext) -> None:
        await ctx.call(self.client.resource_groups.begin_delete, observed.name)
        logger.info("Deleting resource group", extra={"resource_group": observed.name})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"resource group {observed.name} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                SLOW_POLL,
            )
        )

    async def apply_tags(
        self, observed: ResourceGroup, diff: TagDiff, ctx: OperationContext
    ) -> None:
        await apply_azure_tags(self.client, observed.id, observed.tags, diff, ctx)
