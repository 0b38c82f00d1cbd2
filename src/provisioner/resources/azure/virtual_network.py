"""Azure virtual network handler.

Create idempotence: guaranteed (PUT addressed by resource group and name).

Updates re-read the full network model and modify it in place before the
PUT. Subnets are managed outside this resource and a PUT built from the
spec alone would delete them.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, ClassVar

from azure.mgmt.network.models import AddressSpace, DhcpOptions
from azure.mgmt.network.models import VirtualNetwork as ArmVirtualNetwork

from ...classify import AzureErrorClassifier
from ...clients import LazyClient
from ...convergence import STANDARD_POLL, ConvergenceTarget
from ...diagnostics import Diagnostic, DiagnosticCollector, join_path
from ...reconciler import OperationContext
from ...state import ResourceSpec, is_absent
from ...tags import TagDiff, validate_azure_tags
from .common import AZURE_LOCATION_PATTERN, FAILED, SUCCEEDED, apply_azure_tags, split_resource_id

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 64
NAME_PATTERN = r"[a-zA-Z0-9][a-zA-Z0-9_.-]*[a-zA-Z0-9_]"
MIN_ADDRESS_PREFIX = 8
MAX_ADDRESS_PREFIX = 29


class VirtualNetwork(ResourceSpec):
    """An Azure virtual network."""

    type_name: ClassVar[str] = "azure:VirtualNetwork"
    id_field: ClassVar[str | None] = "id"
    natural_key_fields: ClassVar[tuple[str, ...]] = ("resource_group", "name")
    cloud_fields: ClassVar[tuple[str, ...]] = ("id", "resource_guid", "provisioning_state")
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"name", "resource_group", "location"})
    unordered_fields: ClassVar[frozenset[str]] = frozenset({"address_spaces"})

    name: str | None = None
    resource_group: str | None = None
    location: str | None = None
    address_spaces: list[str] | None = None
    dns_servers: list[str] | None = None

    id: str | None = None
    resource_guid: str | None = None
    provisioning_state: str | None = None


def _provisioned(observed: Any) -> bool:
    return not is_absent(observed) and observed.provisioning_state == SUCCEEDED


def _provisioning_failed(observed: Any) -> bool:
    return not is_absent(observed) and observed.provisioning_state == FAILED


class VirtualNetworkHandler:
    type_name = VirtualNetwork.type_name
    spec_type = VirtualNetwork
    classifier = AzureErrorClassifier()
    create_idempotent = True

    def __init__(self, network: LazyClient[Any], resource: LazyClient[Any]) -> None:
        self._network = network
        self._resource = resource

    @property
    def client(self) -> Any:
        return self._network.get()

    def validate(self, spec: VirtualNetwork) -> list[Diagnostic]:
        c = DiagnosticCollector()

        if c.require(spec.name, "name"):
            if c.check_length(spec.name, "name", MIN_NAME_LENGTH, MAX_NAME_LENGTH):
                c.check_pattern(
                    spec.name,
                    "name",
                    NAME_PATTERN,
                    "name must start with a letter or digit, end with a letter, digit "
                    "or '_', and contain only letters, digits, '_', '.' and '-'",
                )
        c.require(spec.resource_group, "resource_group")
        if c.require(spec.location, "location"):
            c.check_pattern(
                spec.location,
                "location",
                AZURE_LOCATION_PATTERN,
                "location must be a lowercase region name such as westeurope",
            )

        if c.require(
            spec.address_spaces, "address_spaces", "at least one address space is required"
        ):
            for i, prefix in enumerate(spec.address_spaces):
                c.check_cidr(
                    prefix, join_path("address_spaces", i), MIN_ADDRESS_PREFIX, MAX_ADDRESS_PREFIX
                )

        for i, server in enumerate(spec.dns_servers or []):
            try:
                ipaddress.IPv4Address(server)
            except ValueError:
                c.error("DNS server must be an IPv4 address", join_path("dns_servers", i))

        validate_azure_tags(c, spec.tags)
        return c.diagnostics

    @staticmethod
    def _address(spec: VirtualNetwork) -> tuple[str | None, str | None]:
        if spec.id:
            return split_resource_id(spec.id)
        if spec.resource_group and spec.name:
            return spec.resource_group, spec.name
        return None, None

    def fetch(self, spec: VirtualNetwork) -> VirtualNetwork | None:
        resource_group, name = self._address(spec)
        if not resource_group or not name:
            return None
        vnet = self.client.virtual_networks.get(resource_group, name)
        return self._to_spec(vnet, resource_group)

    @staticmethod
    def _to_spec(vnet: Any, resource_group: str) -> VirtualNetwork:
        address_space = getattr(vnet, "address_space", None)
        dhcp_options = getattr(vnet, "dhcp_options", None)
        return VirtualNetwork(
            name=vnet.name,
            resource_group=resource_group,
            location=vnet.location,
            address_spaces=list(getattr(address_space, "address_prefixes", None) or []),
            dns_servers=list(getattr(dhcp_options, "dns_servers", None) or []),
            id=vnet.id,
            resource_guid=vnet.resource_guid,
            provisioning_state=vnet.provisioning_state,
            tags=dict(vnet.tags or {}),
        )

    def _wait_provisioned(
        self, ctx: OperationContext, spec: VirtualNetwork, what: str
    ) -> ConvergenceTarget[Any]:
        return ConvergenceTarget.from_policy(
            f"virtual network {spec.name} {what}",
            lambda: ctx.probe(spec),
            _provisioned,
            STANDARD_POLL,
            is_failed=_provisioning_failed,
        )

    async def create(self, spec: VirtualNetwork, ctx: OperationContext) -> VirtualNetwork:
        model = ArmVirtualNetwork(
            location=spec.location,
            tags=spec.tags,
            address_space=AddressSpace(address_prefixes=list(spec.address_spaces or [])),
        )
        if spec.dns_servers:
            model.dhcp_options = DhcpOptions(dns_servers=list(spec.dns_servers))

        await ctx.call(
            self.client.virtual_networks.begin_create_or_update,
            spec.resource_group,
            spec.name,
            model,
        )
        logger.info(
            "Creating virtual network",
            extra={
                "resource_group": spec.resource_group,
                "virtual_network": spec.name,
                "address_spaces": spec.address_spaces,
            },
        )
        return await ctx.converge(self._wait_provisioned(ctx, spec, "provisioned"))

    async def update(
        self,
        desired: VirtualNetwork,
        observed: VirtualNetwork,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        if "address_spaces" not in changes and "dns_servers" not in changes:
            return

        model = await ctx.call(
            self.client.virtual_networks.get, observed.resource_group, observed.name
        )
        if "address_spaces" in changes:
            model.address_space = AddressSpace(address_prefixes=list(desired.address_spaces))
        if "dns_servers" in changes:
            model.dhcp_options = DhcpOptions(dns_servers=list(desired.dns_servers))

        await ctx.call(
            self.client.virtual_networks.begin_create_or_update,
            observed.resource_group,
            observed.name,
            model,
        )
        logger.info(
            "Updating virtual network",
            extra={"virtual_network": observed.name, "fields": sorted(changes)},
        )
        await ctx.converge(self._wait_provisioned(ctx, observed, "updated"))

    async def delete(self, observed: VirtualNetwork, ctx: OperationContext) -> None:
        await ctx.call(
            self.client.virtual_networks.begin_delete, observed.resource_group, observed.name
        )
        logger.info("Deleting virtual network", extra={"virtual_network": observed.name})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"virtual network {observed.name} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                STANDARD_POLL,
            )
        )

    async def apply_tags(
        self, observed: VirtualNetwork, diff: TagDiff, ctx: OperationContext
    ) -> None:
        await apply_azure_tags(self._resource.get(), observed.id, observed.tags, diff, ctx)
