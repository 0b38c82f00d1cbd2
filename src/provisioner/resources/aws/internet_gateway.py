"""AWS internet gateway handler.

Create idempotence: not guaranteed. CreateInternetGateway accepts no
idempotency token.

The VPC attachment is a dependent of the gateway: delete detaches it first,
and a detach of an already detached gateway is not an error.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from botocore.exceptions import ClientError

from ...classify import AwsErrorClassifier
from ...clients import LazyClient
from ...convergence import FAST_POLL, ConvergenceTarget
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
from .common import apply_ec2_tags, first, tolerate

logger = logging.getLogger(__name__)

VPC_ID_PATTERN = r"vpc-[0-9a-f]{8,17}"
ATTACHED_STATES = frozenset({"attached", "available"})

NOT_FOUND_CODES = ("InvalidInternetGatewayID.NotFound",)

# Detach errors that mean the attachment is already gone
DETACH_TOLERATED_CODES = ("Gateway.NotAttached", "InvalidVpcID.NotFound")


class InternetGateway(ResourceSpec):
    """An internet gateway, optionally attached to one VPC."""

    type_name: ClassVar[str] = "aws:InternetGateway"
    reserved_tag_prefixes: ClassVar[tuple[str, ...]] = (AWS_RESERVED_TAG_PREFIX,)
    id_field: ClassVar[str | None] = "internet_gateway_id"
    cloud_fields: ClassVar[tuple[str, ...]] = ("internet_gateway_id", "owner_id")

    vpc_id: str | None = None

    internet_gateway_id: str | None = None
    owner_id: str | None = None


class InternetGatewayHandler:
    type_name = InternetGateway.type_name
    spec_type = InternetGateway
    classifier = AwsErrorClassifier.for_codes(*NOT_FOUND_CODES)
    create_idempotent = False

    def __init__(self, ec2: LazyClient[Any]) -> None:
        self._ec2 = ec2

    @property
    def client(self) -> Any:
        return self._ec2.get()

    def validate(self, spec: InternetGateway) -> list[Diagnostic]:
        c = DiagnosticCollector()
        c.check_pattern(spec.vpc_id, "vpc_id", VPC_ID_PATTERN, "vpc_id must look like vpc-xxxxxxxx")
        validate_aws_tags(c, spec.tags)
        return c.diagnostics

    def fetch(self, spec: InternetGateway) -> InternetGateway | None:
        if not spec.internet_gateway_id:
            return None
        response = self.client.describe_internet_gateways(
            InternetGatewayIds=[spec.internet_gateway_id]
        )
        gateway = first(response.get("InternetGateways"))
        if gateway is None:
            return None

        attachment = first(
            a for a in gateway.get("Attachments", []) if a.get("State") in ATTACHED_STATES
        )
        return InternetGateway(
            vpc_id=attachment.get("VpcId") if attachment else None,
            internet_gateway_id=gateway.get("InternetGatewayId"),
            owner_id=gateway.get("OwnerId"),
            tags=from_aws_tags(gateway.get("Tags")),
        )

    async def _attach(self, ctx: OperationContext, gateway: InternetGateway, vpc_id: str) -> None:
        await ctx.call(
            self.client.attach_internet_gateway,
            InternetGatewayId=gateway.internet_gateway_id,
            VpcId=vpc_id,
        )
        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"internet gateway {gateway.internet_gateway_id} attached to {vpc_id}",
                lambda: ctx.probe(gateway),
                lambda o: not is_absent(o) and o.vpc_id == vpc_id,
                FAST_POLL,
            )
        )

    async def _detach(self, ctx: OperationContext, gateway_id: str, vpc_id: str) -> None:
        try:
            await ctx.call(
                self.client.detach_internet_gateway,
                InternetGatewayId=gateway_id,
                VpcId=vpc_id,
            )
        except ClientError as e:
            if not tolerate(e, DETACH_TOLERATED_CODES):
                raise
        logger.info(
            "Detached internet gateway",
            extra={"internet_gateway_id": gateway_id, "vpc_id": vpc_id},
        )

    async def create(self, spec: InternetGateway, ctx: OperationContext) -> InternetGateway:
        request: dict[str, Any] = {}
        tag_specs = aws_tag_specifications("internet-gateway", spec.tags)
        if tag_specs:
            request["TagSpecifications"] = tag_specs

        response = await ctx.call(self.client.create_internet_gateway, **request)
        gateway_id = response["InternetGateway"]["InternetGatewayId"]
        logger.info("Created internet gateway", extra={"internet_gateway_id": gateway_id})

        created = spec.model_copy(update={"internet_gateway_id": gateway_id})
        if spec.vpc_id:
            await self._attach(ctx, created, spec.vpc_id)
        return created

    async def update(
        self,
        desired: InternetGateway,
        observed: InternetGateway,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        if "vpc_id" not in changes:
            return
        if observed.vpc_id:
            await self._detach(ctx, observed.internet_gateway_id, observed.vpc_id)
        await self._attach(ctx, desired, desired.vpc_id)

    async def delete(self, observed: InternetGateway, ctx: OperationContext) -> None:
        if observed.vpc_id:
            await self._detach(ctx, observed.internet_gateway_id, observed.vpc_id)
        await ctx.call(
            self.client.delete_internet_gateway,
            InternetGatewayId=observed.internet_gateway_id,
        )
        logger.info(
            "Deleted internet gateway",
            extra={"internet_gateway_id": observed.internet_gateway_id},
        )

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"internet gateway {observed.internet_gateway_id} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                FAST_POLL,
            )
        )

    async def apply_tags(
        self, observed: InternetGateway, diff: TagDiff, ctx: OperationContext
    ) -> None:
        await apply_ec2_tags(self.client, observed.internet_gateway_id, diff, ctx)
