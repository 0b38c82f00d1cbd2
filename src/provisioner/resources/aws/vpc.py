"""AWS VPC handler.

Create idempotence: not guaranteed. CreateVpc accepts no idempotency token,
so a create retried after an unknown outcome can leave a duplicate VPC.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from ...classify import AwsErrorClassifier
from ...clients import LazyClient
from ...convergence import FAST_POLL, STANDARD_POLL, ConvergenceTarget
from ...diagnostics import Diagnostic, DiagnosticCollector
from ...reconciler import OperationContext
from ...state import ResourceSpec, is_absent
from ...tags import (
    AWS_RESERVED_TAG_PREFIX,
    TagDiff,
    aws_tag_specifications,
    from_aws_tags,
    validate_aws_tags,
)
from .common import apply_ec2_tags, first

logger = logging.getLogger(__name__)

VALID_INSTANCE_TENANCIES = frozenset({"default", "dedicated"})
MIN_VPC_PREFIX = 16
MAX_VPC_PREFIX = 28

# VPC attribute name in the request, response key in DescribeVpcAttribute
DNS_ATTRIBUTES: dict[str, tuple[str, str]] = {
    "enable_dns_support": ("enableDnsSupport", "EnableDnsSupport"),
    "enable_dns_hostnames": ("enableDnsHostnames", "EnableDnsHostnames"),
}

NOT_FOUND_CODES = ("InvalidVpcID.NotFound",)


class Vpc(ResourceSpec):
    """A VPC."""

    type_name: ClassVar[str] = "aws:Vpc"
    reserved_tag_prefixes: ClassVar[tuple[str, ...]] = (AWS_RESERVED_TAG_PREFIX,)
    id_field: ClassVar[str | None] = "vpc_id"
    cloud_fields: ClassVar[tuple[str, ...]] = ("vpc_id", "state", "owner_id")
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"cidr_block", "instance_tenancy"})
    state_field: ClassVar[str | None] = "state"

    cidr_block: str | None = None
    instance_tenancy: str | None = None
    enable_dns_support: bool | None = None
    enable_dns_hostnames: bool | None = None

    vpc_id: str | None = None
    state: str | None = None
    owner_id: str | None = None


class VpcHandler:
    type_name = Vpc.type_name
    spec_type = Vpc
    classifier = AwsErrorClassifier.for_codes(*NOT_FOUND_CODES)
    create_idempotent = False

    def __init__(self, ec2: LazyClient[Any]) -> None:
        self._ec2 = ec2

    @property
    def client(self) -> Any:
        return self._ec2.get()

    def validate(self, spec: Vpc) -> list[Diagnostic]:
        c = DiagnosticCollector()
        if c.require(spec.cidr_block, "cidr_block"):
            c.check_cidr(spec.cidr_block, "cidr_block", MIN_VPC_PREFIX, MAX_VPC_PREFIX)
        c.check_enum(
            spec.instance_tenancy,
            "instance_tenancy",
            VALID_INSTANCE_TENANCIES,
            "Invalid instance_tenancy",
        )
        if spec.enable_dns_hostnames and spec.enable_dns_support is False:
            c.error(
                "enable_dns_hostnames requires enable_dns_support",
                "enable_dns_hostnames",
            )
        validate_aws_tags(c, spec.tags)
        return c.diagnostics

    def fetch(self, spec: Vpc) -> Vpc | None:
        if not spec.vpc_id:
            return None
        response = self.client.describe_vpcs(VpcIds=[spec.vpc_id])
        vpc = first(response.get("Vpcs"))
        if vpc is None:
            return None

        attributes: dict[str, Any] = {}
        for field_name, (attribute, key) in DNS_ATTRIBUTES.items():
            result = self.client.describe_vpc_attribute(VpcId=spec.vpc_id, Attribute=attribute)
            attributes[field_name] = result.get(key, {}).get("Value")

        return Vpc(
            cidr_block=vpc.get("CidrBlock"),
            instance_tenancy=vpc.get("InstanceTenancy"),
            vpc_id=vpc.get("VpcId"),
            state=vpc.get("State"),
            owner_id=vpc.get("OwnerId"),
            tags=from_aws_tags(vpc.get("Tags")),
            **attributes,
        )

    async def _set_dns_attribute(
        self, ctx: OperationContext, vpc_id: str, field_name: str, value: bool
    ) -> None:
        # ModifyVpcAttribute accepts exactly one attribute per call
        key = DNS_ATTRIBUTES[field_name][1]
        await ctx.call(self.client.modify_vpc_attribute, VpcId=vpc_id, **{key: {"Value": value}})

    async def create(self, spec: Vpc, ctx: OperationContext) -> Vpc:
        request: dict[str, Any] = {"CidrBlock": spec.cidr_block}
        if spec.instance_tenancy:
            request["InstanceTenancy"] = spec.instance_tenancy
        tag_specs = aws_tag_specifications("vpc", spec.tags)
        if tag_specs:
            request["TagSpecifications"] = tag_specs

        response = await ctx.call(self.client.create_vpc, **request)
        vpc_id = response["Vpc"]["VpcId"]
        logger.info("Created VPC", extra={"vpc_id": vpc_id, "cidr_block": spec.cidr_block})

        created = spec.model_copy(update={"vpc_id": vpc_id})
        observed = await ctx.converge(
            ConvergenceTarget.from_policy(
                f"vpc {vpc_id} available",
                lambda: ctx.probe(created),
                lambda o: not is_absent(o) and o.state == "available",
                FAST_POLL,
            )
        )

        # Support must be on before hostnames can be enabled
        for field_name in ("enable_dns_support", "enable_dns_hostnames"):
            value = getattr(spec, field_name)
            if value is not None and value != getattr(observed, field_name):
                await self._set_dns_attribute(ctx, vpc_id, field_name, value)
        return observed

    async def update(
        self,
        desired: Vpc,
        observed: Vpc,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        order = ["enable_dns_support", "enable_dns_hostnames"]
        if desired.enable_dns_hostnames is False:
            # Hostnames must be off before support can be disabled
            order.reverse()
        for field_name in order:
            if field_name in changes:
                await self._set_dns_attribute(
                    ctx, observed.vpc_id, field_name, getattr(desired, field_name)
                )

    async def delete(self, observed: Vpc, ctx: OperationContext) -> None:
        await ctx.call(self.client.delete_vpc, VpcId=observed.vpc_id)
        logger.info("Deleting VPC", extra={"vpc_id": observed.vpc_id})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"vpc {observed.vpc_id} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                STANDARD_POLL,
            )
        )

    async def apply_tags(self, observed: Vpc, diff: TagDiff, ctx: OperationContext) -> None:
        await apply_ec2_tags(self.client, observed.vpc_id, diff, ctx)
