"""AWS security group handler.

Create idempotence: not guaranteed. CreateSecurityGroup has no token, but a
retried create fails with InvalidGroup.Duplicate rather than creating a
second group, since group names are unique per VPC.

Ingress rules are reconciled as a set. Each rule is flattened to one entry
per CIDR block before comparison, because EC2 merges rules sharing protocol
and ports into a single permission when it reports them back.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from botocore.exceptions import ClientError
from pydantic import BaseModel, Field

from ...classify import AwsErrorClassifier
from ...clients import LazyClient
from ...convergence import FAST_POLL, ConvergenceTarget
from ...diagnostics import Diagnostic, DiagnosticCollector, join_path
from ...reconciler import OperationContext
from ...state import ResourceSpec, is_absent
from ...tags import (
    AWS_RESERVED_TAG_PREFIX,
    TagDiff,
    aws_tag_specifications,
    diff_sets,
    from_aws_tags,
    validate_aws_tags,
)
from .common import apply_ec2_tags, first, tolerate

logger = logging.getLogger(__name__)

VALID_PROTOCOLS = frozenset({"tcp", "udp", "icmp", "-1"})
PORT_PROTOCOLS = frozenset({"tcp", "udp"})
MIN_PORT = 1
MAX_PORT = 65535
MAX_NAME_LENGTH = 255
VPC_ID_PATTERN = r"vpc-[0-9a-f]{8,17}"

NOT_FOUND_CODES = ("InvalidGroup.NotFound",)


class IngressRule(BaseModel):
    """An ingress rule: protocol, port range and source CIDR blocks."""

    model_config = {"extra": "forbid"}

    protocol: str | None = None
    from_port: int | None = None
    to_port: int | None = None
    cidr_blocks: list[str] = Field(default_factory=list)
    description: str | None = None


def flatten_rules(rules: list[IngressRule] | None) -> list[IngressRule]:
    """Split rules into one rule per CIDR block, in a stable order."""
    flat: list[IngressRule] = []
    for rule in rules or []:
        all_ports = rule.protocol == "-1"
        for cidr in rule.cidr_blocks:
            flat.append(
                IngressRule(
                    protocol=rule.protocol,
                    from_port=None if all_ports else rule.from_port,
                    to_port=None if all_ports else rule.to_port,
                    cidr_blocks=[cidr],
                    description=rule.description,
                )
            )
    return sorted(
        flat,
        key=lambda r: (r.protocol or "", r.from_port or 0, r.to_port or 0, r.cidr_blocks[0]),
    )


def _to_ip_permission(rule: IngressRule) -> dict[str, Any]:
    ip_range: dict[str, str] = {"CidrIp": rule.cidr_blocks[0]}
    if rule.description:
        ip_range["Description"] = rule.description
    permission: dict[str, Any] = {"IpProtocol": rule.protocol, "IpRanges": [ip_range]}
    if rule.protocol != "-1":
        if rule.from_port is not None:
            permission["FromPort"] = rule.from_port
        if rule.to_port is not None:
            permission["ToPort"] = rule.to_port
    return permission


def _from_ip_permissions(permissions: list[dict[str, Any]]) -> list[IngressRule]:
    rules: list[IngressRule] = []
    for permission in permissions:
        for ip_range in permission.get("IpRanges", []):
            rules.append(
                IngressRule(
                    protocol=permission.get("IpProtocol"),
                    from_port=permission.get("FromPort"),
                    to_port=permission.get("ToPort"),
                    cidr_blocks=[ip_range["CidrIp"]],
                    description=ip_range.get("Description") or None,
                )
            )
    return flatten_rules(rules)


class SecurityGroup(ResourceSpec):
    """A VPC security group with its ingress rules."""

    type_name: ClassVar[str] = "aws:SecurityGroup"
    reserved_tag_prefixes: ClassVar[tuple[str, ...]] = (AWS_RESERVED_TAG_PREFIX,)
    id_field: ClassVar[str | None] = "group_id"
    natural_key_fields: ClassVar[tuple[str, ...]] = ("vpc_id", "group_name")
    cloud_fields: ClassVar[tuple[str, ...]] = ("group_id", "owner_id")
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"group_name", "description", "vpc_id"})
    unordered_fields: ClassVar[frozenset[str]] = frozenset({"ingress_rules"})

    group_name: str | None = None
    description: str | None = None
    vpc_id: str | None = None
    ingress_rules: list[IngressRule] | None = None

    group_id: str | None = None
    owner_id: str | None = None

    @classmethod
    def comparable(cls, name: str, value: Any) -> Any:
        if name == "ingress_rules" and value is not None:
            return flatten_rules(value)
        return value


class SecurityGroupHandler:
    type_name = SecurityGroup.type_name
    spec_type = SecurityGroup
    classifier = AwsErrorClassifier.for_codes(*NOT_FOUND_CODES)
    create_idempotent = False

    def __init__(self, ec2: LazyClient[Any]) -> None:
        self._ec2 = ec2

    @property
    def client(self) -> Any:
        return self._ec2.get()

    def validate(self, spec: SecurityGroup) -> list[Diagnostic]:
        c = DiagnosticCollector()

        if c.require(spec.group_name, "group_name"):
            c.check_length(spec.group_name, "group_name", 1, MAX_NAME_LENGTH)
            if spec.group_name.lower().startswith("sg-"):
                c.error("group_name cannot start with sg-", "group_name")
        if c.require(spec.description, "description"):
            c.check_length(spec.description, "description", 1, MAX_NAME_LENGTH)
        if c.require(spec.vpc_id, "vpc_id"):
            c.check_pattern(
                spec.vpc_id, "vpc_id", VPC_ID_PATTERN, "vpc_id must look like vpc-xxxxxxxx"
            )

        for i, rule in enumerate(spec.ingress_rules or []):
            self._validate_rule(c.child(join_path("ingress_rules", i)), rule)

        validate_aws_tags(c, spec.tags)
        return c.diagnostics

    @staticmethod
    def _validate_rule(c: DiagnosticCollector, rule: IngressRule) -> None:
        if c.require(rule.protocol, "protocol"):
            c.check_enum(rule.protocol, "protocol", VALID_PROTOCOLS, "Invalid protocol")

        if rule.protocol in PORT_PROTOCOLS:
            from_ok = c.require(rule.from_port, "from_port") and c.check_range(
                rule.from_port, "from_port", MIN_PORT, MAX_PORT
            )
            to_ok = c.require(rule.to_port, "to_port") and c.check_range(
                rule.to_port, "to_port", MIN_PORT, MAX_PORT
            )
            if from_ok and to_ok and rule.from_port > rule.to_port:
                c.error("from_port must not be greater than to_port", "from_port")
        elif rule.protocol == "icmp":
            c.check_range(rule.from_port, "from_port", -1, 255)
            c.check_range(rule.to_port, "to_port", -1, 255)

        if not rule.cidr_blocks:
            c.error("rule must have at least one CIDR block", "cidr_blocks")
        for j, cidr in enumerate(rule.cidr_blocks):
            c.check_cidr(cidr, join_path("cidr_blocks", j))

    def fetch(self, spec: SecurityGroup) -> SecurityGroup | None:
        if spec.group_id:
            response = self.client.describe_security_groups(GroupIds=[spec.group_id])
        elif spec.natural_key() is not None:
            response = self.client.describe_security_groups(
                Filters=[
                    {"Name": "vpc-id", "Values": [spec.vpc_id]},
                    {"Name": "group-name", "Values": [spec.group_name]},
                ]
            )
        else:
            return None

        group = first(response.get("SecurityGroups"))
        if group is None:
            return None
        return SecurityGroup(
            group_name=group.get("GroupName"),
            description=group.get("Description"),
            vpc_id=group.get("VpcId"),
            ingress_rules=_from_ip_permissions(group.get("IpPermissions", [])),
            group_id=group.get("GroupId"),
            owner_id=group.get("OwnerId"),
            tags=from_aws_tags(group.get("Tags")),
        )

    async def _revoke(self, ctx: OperationContext, group_id: str, rules: list[IngressRule]) -> None:
        if not rules:
            return
        try:
            await ctx.call(
                self.client.revoke_security_group_ingress,
                GroupId=group_id,
                IpPermissions=[_to_ip_permission(r) for r in rules],
            )
        except ClientError as e:
            if not tolerate(e, ("InvalidPermission.NotFound",)):
                raise

    async def _authorize(
        self, ctx: OperationContext, group_id: str, rules: list[IngressRule]
    ) -> None:
        if not rules:
            return
        try:
            await ctx.call(
                self.client.authorize_security_group_ingress,
                GroupId=group_id,
                IpPermissions=[_to_ip_permission(r) for r in rules],
            )
        except ClientError as e:
            if not tolerate(e, ("InvalidPermission.Duplicate",)):
                raise

    async def create(self, spec: SecurityGroup, ctx: OperationContext) -> SecurityGroup:
        request: dict[str, Any] = {
            "GroupName": spec.group_name,
            "Description": spec.description,
            "VpcId": spec.vpc_id,
        }
        tag_specs = aws_tag_specifications("security-group", spec.tags)
        if tag_specs:
            request["TagSpecifications"] = tag_specs

        response = await ctx.call(self.client.create_security_group, **request)
        group_id = response["GroupId"]
        logger.info(
            "Created security group",
            extra={"group_id": group_id, "group_name": spec.group_name, "vpc_id": spec.vpc_id},
        )

        created = spec.model_copy(update={"group_id": group_id})
        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"security group {group_id} visible",
                lambda: ctx.probe(created),
                lambda o: not is_absent(o),
                FAST_POLL,
            )
        )
        await self._authorize(ctx, group_id, flatten_rules(spec.ingress_rules))
        return created

    async def update(
        self,
        desired: SecurityGroup,
        observed: SecurityGroup,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        if "ingress_rules" not in changes:
            return
        diff = diff_sets(flatten_rules(desired.ingress_rules), observed.ingress_rules)
        logger.info(
            "Reconciling ingress rules",
            extra={
                "group_id": observed.group_id,
                "rules_added": len(diff.to_add),
                "rules_removed": len(diff.to_remove),
            },
        )
        # Revoke first so a rule whose description changed can be re-added
        await self._revoke(ctx, observed.group_id, diff.to_remove)
        await self._authorize(ctx, observed.group_id, diff.to_add)

    async def delete(self, observed: SecurityGroup, ctx: OperationContext) -> None:
        await ctx.call(self.client.delete_security_group, GroupId=observed.group_id)
        logger.info("Deleted security group", extra={"group_id": observed.group_id})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"security group {observed.group_id} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                FAST_POLL,
            )
        )

    async def apply_tags(
        self, observed: SecurityGroup, diff: TagDiff, ctx: OperationContext
    ) -> None:
        await apply_ec2_tags(self.client, observed.group_id, diff, ctx)
