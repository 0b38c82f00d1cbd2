"""Azure managed disk handler.

Create idempotence: guaranteed (PUT addressed by resource group and name).
Disks only grow: a smaller size_gb is rejected before any call is made.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from azure.mgmt.compute.models import CreationData, Disk, DiskSku, DiskUpdate

from ...classify import AzureErrorClassifier
from ...clients import LazyClient
from ...convergence import STANDARD_POLL, ConvergenceTarget
from ...diagnostics import Diagnostic, DiagnosticCollector
from ...errors import ValidationFailed
from ...reconciler import OperationContext
from ...state import ResourceSpec, is_absent
from ...tags import TagDiff, validate_azure_tags
from .common import AZURE_LOCATION_PATTERN, FAILED, SUCCEEDED, apply_azure_tags, split_resource_id

logger = logging.getLogger(__name__)

VALID_SKUS = frozenset(
    {
        "Standard_LRS",
        "Premium_LRS",
        "StandardSSD_LRS",
        "UltraSSD_LRS",
        "Premium_ZRS",
        "StandardSSD_ZRS",
    }
)
DEFAULT_SKU = "StandardSSD_LRS"
ULTRA_SKU = "UltraSSD_LRS"

MAX_NAME_LENGTH = 80
NAME_PATTERN = r"[a-zA-Z0-9_](?:[a-zA-Z0-9_.-]*[a-zA-Z0-9_])?"
MIN_SIZE_GB = 1
MAX_SIZE_GB = 65536
MIN_ULTRA_IOPS = 100
MAX_ULTRA_IOPS = 160000
MIN_ULTRA_MBPS = 1
MAX_ULTRA_MBPS = 2000

# Fields sent in a DiskUpdate, keyed by spec field
UPDATABLE_FIELDS = ("size_gb", "sku", "disk_iops", "disk_mbps")


class ManagedDisk(ResourceSpec):
    """An empty Azure managed disk."""

    type_name: ClassVar[str] = "azure:ManagedDisk"
    id_field: ClassVar[str | None] = "id"
    natural_key_fields: ClassVar[tuple[str, ...]] = ("resource_group", "name")
    cloud_fields: ClassVar[tuple[str, ...]] = ("id", "provisioning_state", "disk_state")
    immutable_fields: ClassVar[frozenset[str]] = frozenset(
        {"name", "resource_group", "location", "zone"}
    )

    name: str | None = None
    resource_group: str | None = None
    location: str | None = None
    size_gb: int | None = None
    sku: str | None = None
    zone: str | None = None
    disk_iops: int | None = None
    disk_mbps: int | None = None

    id: str | None = None
    provisioning_state: str | None = None
    disk_state: str | None = None


class ManagedDiskHandler:
    type_name = ManagedDisk.type_name
    spec_type = ManagedDisk
    classifier = AzureErrorClassifier()
    create_idempotent = True

    def __init__(self, compute: LazyClient[Any], resource: LazyClient[Any]) -> None:
        self._compute = compute
        self._resource = resource

    @property
    def client(self) -> Any:
        return self._compute.get()

    def validate(self, spec: ManagedDisk) -> list[Diagnostic]:
        c = DiagnosticCollector()

        if c.require(spec.name, "name"):
            if c.check_length(spec.name, "name", 1, MAX_NAME_LENGTH):
                c.check_pattern(
                    spec.name,
                    "name",
                    NAME_PATTERN,
                    "name may contain letters, digits, '_', '.' and '-' and must end "
                    "with a letter, digit or '_'",
                )
        c.require(spec.resource_group, "resource_group")
        if c.require(spec.location, "location"):
            c.check_pattern(
                spec.location,
                "location",
                AZURE_LOCATION_PATTERN,
                "location must be a lowercase region name such as westeurope",
            )
        if c.require(spec.size_gb, "size_gb"):
            c.check_range(spec.size_gb, "size_gb", MIN_SIZE_GB, MAX_SIZE_GB)

        sku = spec.sku or DEFAULT_SKU
        if c.check_enum(spec.sku, "sku", VALID_SKUS, "Invalid disk sku"):
            is_ultra = sku == ULTRA_SKU
            c.require_when(is_ultra, spec.zone, "zone", "zone is required for UltraSSD_LRS disks")
            if c.forbid_unless(
                is_ultra, spec.disk_iops, "disk_iops", "disk_iops is only valid for UltraSSD_LRS"
            ):
                c.check_range(spec.disk_iops, "disk_iops", MIN_ULTRA_IOPS, MAX_ULTRA_IOPS)
            if c.forbid_unless(
                is_ultra, spec.disk_mbps, "disk_mbps", "disk_mbps is only valid for UltraSSD_LRS"
            ):
                c.check_range(spec.disk_mbps, "disk_mbps", MIN_ULTRA_MBPS, MAX_ULTRA_MBPS)

        validate_azure_tags(c, spec.tags)
        return c.diagnostics

    @staticmethod
    def _address(spec: ManagedDisk) -> tuple[str | None, str | None]:
        if spec.id:
            return split_resource_id(spec.id)
        if spec.resource_group and spec.name:
            return spec.resource_group, spec.name
        return None, None

    def fetch(self, spec: ManagedDisk) -> ManagedDisk | None:
        resource_group, name = self._address(spec)
        if not resource_group or not name:
            return None
        disk = self.client.disks.get(resource_group, name)
        sku = getattr(disk, "sku", None)
        return ManagedDisk(
            name=disk.name,
            resource_group=resource_group,
            location=disk.location,
            size_gb=disk.disk_size_gb,
            sku=getattr(sku, "name", None),
            zone=(disk.zones or [None])[0],
            disk_iops=disk.disk_iops_read_write,
            disk_mbps=disk.disk_m_bps_read_write,
            id=disk.id,
            provisioning_state=disk.provisioning_state,
            disk_state=disk.disk_state,
            tags=dict(disk.tags or {}),
        )

    def _wait_provisioned(
        self, ctx: OperationContext, spec: ManagedDisk, what: str, size_gb: int | None = None
    ) -> ConvergenceTarget[Any]:
        def is_ready(observed: Any) -> bool:
            if is_absent(observed) or observed.provisioning_state != SUCCEEDED:
                return False
            return size_gb is None or observed.size_gb == size_gb

        return ConvergenceTarget.from_policy(
            f"managed disk {spec.name} {what}",
            lambda: ctx.probe(spec),
            is_ready,
            STANDARD_POLL,
            is_failed=lambda o: not is_absent(o) and o.provisioning_state == FAILED,
        )

    async def create(self, spec: ManagedDisk, ctx: OperationContext) -> ManagedDisk:
        disk = Disk(
            location=spec.location,
            tags=spec.tags,
            sku=DiskSku(name=spec.sku or DEFAULT_SKU),
            creation_data=CreationData(create_option="Empty"),
            disk_size_gb=spec.size_gb,
        )
        if spec.zone:
            disk.zones = [spec.zone]
        if spec.disk_iops is not None:
            disk.disk_iops_read_write = spec.disk_iops
        if spec.disk_mbps is not None:
            disk.disk_m_bps_read_write = spec.disk_mbps

        await ctx.call(
            self.client.disks.begin_create_or_update, spec.resource_group, spec.name, disk
        )
        logger.info(
            "Creating managed disk",
            extra={
                "resource_group": spec.resource_group,
                "disk": spec.name,
                "size_gb": spec.size_gb,
                "sku": spec.sku or DEFAULT_SKU,
            },
        )
        return await ctx.converge(self._wait_provisioned(ctx, spec, "provisioned"))

    async def update(
        self,
        desired: ManagedDisk,
        observed: ManagedDisk,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        if "size_gb" in changes and observed.size_gb is not None:
            if desired.size_gb < observed.size_gb:
                raise ValidationFailed(
                    [
                        Diagnostic.error(
                            "Cannot shrink a managed disk",
                            "size_gb",
                            detail=f"observed {observed.size_gb} GB, desired {desired.size_gb} GB",
                        )
                    ],
                    f"{self.type_name} update rejected",
                )

        if not any(name in changes for name in UPDATABLE_FIELDS):
            return

        patch = DiskUpdate()
        if "size_gb" in changes:
            patch.disk_size_gb = desired.size_gb
        if "sku" in changes:
            patch.sku = DiskSku(name=desired.sku)
        if "disk_iops" in changes:
            patch.disk_iops_read_write = desired.disk_iops
        if "disk_mbps" in changes:
            patch.disk_m_bps_read_write = desired.disk_mbps

        await ctx.call(
            self.client.disks.begin_update, observed.resource_group, observed.name, patch
        )
        logger.info(
            "Updating managed disk",
            extra={"disk": observed.name, "fields": sorted(changes)},
        )
        target_size = desired.size_gb if "size_gb" in changes else None
        await ctx.converge(self._wait_provisioned(ctx, observed, "updated", target_size))

    async def delete(self, observed: ManagedDisk, ctx: OperationContext) -> None:
        await ctx.call(self.client.disks.begin_delete, observed.resource_group, observed.name)
        logger.info("Deleting managed disk", extra={"disk": observed.name})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"managed disk {observed.name} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                STANDARD_POLL,
            )
        )

    async def apply_tags(self, observed: ManagedDisk, diff: TagDiff, ctx: OperationContext) -> None:
        await apply_azure_tags(self._resource.get(), observed.id, observed.tags, diff, ctx)
