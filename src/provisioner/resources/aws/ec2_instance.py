"""AWS EC2 instance handler.

Create idempotence: only with an explicit ``client_token``. RunInstances
always carries a ClientToken, fresh per call unless the caller supplies one,
so retrying with the same ``client_token`` returns the original instance.

Changing the instance type requires the instance to be stopped. The update
path runs stop, wait for "stopped", modify, start, wait for "running" in that
order, and only then applies the remaining field changes.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, ClassVar

from ...classify import AwsErrorClassifier
from ...clients import LazyClient
from ...convergence import SLOW_POLL, ConvergenceTarget
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
from .common import apply_ec2_tags, client_token, first

logger = logging.getLogger(__name__)

VALID_METADATA_HTTP_TOKENS = frozenset({"optional", "required"})
VALID_CPU_CREDITS = frozenset({"standard", "unlimited"})
BURSTABLE_FAMILIES = ("t2.", "t3.", "t3a.", "t4g.")

AMI_PATTERN = r"ami-[0-9a-f]{8,17}"
INSTANCE_TYPE_PATTERN = r"[a-z][a-z0-9-]*\.[a-z0-9]+"

LAUNCH_FAILED_STATES = frozenset({"shutting-down", "terminated"})

NOT_FOUND_CODES = ("InvalidInstanceID.NotFound",)


class Ec2Instance(ResourceSpec):
    """An EC2 instance."""

    type_name: ClassVar[str] = "aws:Ec2Instance"
    reserved_tag_prefixes: ClassVar[tuple[str, ...]] = (AWS_RESERVED_TAG_PREFIX,)
    id_field: ClassVar[str | None] = "instance_id"
    cloud_fields: ClassVar[tuple[str, ...]] = ("instance_id", "state", "private_ip_address")
    optional_cloud_fields: ClassVar[tuple[str, ...]] = ("public_ip_address", "vpc_id")
    immutable_fields: ClassVar[frozenset[str]] = frozenset(
        {"ami", "subnet_id", "key_name", "availability_zone"}
    )
    create_only_fields: ClassVar[frozenset[str]] = frozenset(
        {"user_data", "cpu_credits", "client_token"}
    )
    unordered_fields: ClassVar[frozenset[str]] = frozenset({"security_group_ids"})
    state_field: ClassVar[str | None] = "state"
    terminal_states: ClassVar[frozenset[str]] = frozenset({"terminated"})

    ami: str | None = None
    instance_type: str | None = None
    subnet_id: str | None = None
    security_group_ids: list[str] | None = None
    key_name: str | None = None
    availability_zone: str | None = None
    monitoring: bool | None = None
    user_data: str | None = None
    metadata_http_tokens: str | None = None
    cpu_credits: str | None = None
    client_token: str | None = None

    instance_id: str | None = None
    state: str | None = None
    private_ip_address: str | None = None
    public_ip_address: str | None = None
    vpc_id: str | None = None


class Ec2InstanceHandler:
    type_name = Ec2Instance.type_name
    spec_type = Ec2Instance
    classifier = AwsErrorClassifier.for_codes(*NOT_FOUND_CODES)
    create_idempotent = False

    def __init__(self, ec2: LazyClient[Any]) -> None:
        self._ec2 = ec2

    @property
    def client(self) -> Any:
        return self._ec2.get()

    def validate(self, spec: Ec2Instance) -> list[Diagnostic]:
        c = DiagnosticCollector()

        if c.require(spec.ami, "ami"):
            c.check_pattern(spec.ami, "ami", AMI_PATTERN, "ami must look like ami-xxxxxxxx")
        if c.require(spec.instance_type, "instance_type"):
            c.check_pattern(
                spec.instance_type,
                "instance_type",
                INSTANCE_TYPE_PATTERN,
                "instance_type must look like family.size (e.g. t3.micro)",
            )

        c.check_enum(
            spec.metadata_http_tokens,
            "metadata_http_tokens",
            VALID_METADATA_HTTP_TOKENS,
            "Invalid metadata_http_tokens",
        )
        if c.check_enum(spec.cpu_credits, "cpu_credits", VALID_CPU_CREDITS, "Invalid cpu_credits"):
            instance_type = spec.instance_type or ""
            c.forbid_unless(
                not instance_type or instance_type.startswith(BURSTABLE_FAMILIES),
                spec.cpu_credits,
                "cpu_credits",
                "cpu_credits is only valid for burstable instance types (t2, t3, t3a, t4g)",
            )

        if spec.security_group_ids is not None:
            for i, group_id in enumerate(spec.security_group_ids):
                c.check_pattern(
                    group_id,
                    f"security_group_ids.{i}",
                    r"sg-[0-9a-f]{8,17}",
                    "security group id must look like sg-xxxxxxxx",
                )
            if len(set(spec.security_group_ids)) != len(spec.security_group_ids):
                c.error("security_group_ids must not contain duplicates", "security_group_ids")

        c.check_length(spec.client_token, "client_token", 1, 64)
        validate_aws_tags(c, spec.tags)
        return c.diagnostics

    def fetch(self, spec: Ec2Instance) -> Ec2Instance | None:
        if not spec.instance_id:
            return None
        response = self.client.describe_instances(InstanceIds=[spec.instance_id])
        reservation = first(response.get("Reservations"))
        instance = first(reservation.get("Instances")) if reservation else None
        if instance is None:
            return None
        return self._to_spec(instance)

    @staticmethod
    def _to_spec(instance: dict[str, Any]) -> Ec2Instance:
        monitoring = instance.get("Monitoring", {}).get("State")
        metadata = instance.get("MetadataOptions") or {}
        return Ec2Instance(
            ami=instance.get("ImageId"),
            instance_type=instance.get("InstanceType"),
            subnet_id=instance.get("SubnetId"),
            security_group_ids=[g["GroupId"] for g in instance.get("SecurityGroups", [])],
            key_name=instance.get("KeyName"),
            availability_zone=instance.get("Placement", {}).get("AvailabilityZone"),
            monitoring=None if monitoring is None else monitoring in ("enabled", "pending"),
            metadata_http_tokens=metadata.get("HttpTokens"),
            client_token=instance.get("ClientToken") or None,
            instance_id=instance.get("InstanceId"),
            state=instance.get("State", {}).get("Name"),
            private_ip_address=instance.get("PrivateIpAddress"),
            public_ip_address=instance.get("PublicIpAddress"),
            vpc_id=instance.get("VpcId"),
            tags=from_aws_tags(instance.get("Tags")),
        )

    def _wait_for_state(
        self,
        ctx: OperationContext,
        spec: Ec2Instance,
        target_state: str,
        failed_states: frozenset[str] = frozenset(),
    ) -> ConvergenceTarget[Any]:
        return ConvergenceTarget.from_policy(
            f"instance {spec.instance_id} {target_state}",
            lambda: ctx.probe(spec),
            lambda o: not is_absent(o) and o.state == target_state,
            SLOW_POLL,
            is_failed=lambda o: not is_absent(o) and o.state in failed_states,
        )

    async def create(self, spec: Ec2Instance, ctx: OperationContext) -> Ec2Instance:
        request: dict[str, Any] = {
            "ImageId": spec.ami,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "ClientToken": client_token(spec.client_token),
        }
        if spec.subnet_id:
            request["SubnetId"] = spec.subnet_id
        if spec.security_group_ids:
            request["SecurityGroupIds"] = list(spec.security_group_ids)
        if spec.key_name:
            request["KeyName"] = spec.key_name
        if spec.availability_zone:
            request["Placement"] = {"AvailabilityZone": spec.availability_zone}
        if spec.monitoring:
            request["Monitoring"] = {"Enabled": True}
        if spec.user_data is not None:
            request["UserData"] = base64.b64encode(spec.user_data.encode("utf-8")).decode("ascii")
        if spec.metadata_http_tokens:
            request["MetadataOptions"] = {"HttpTokens": spec.metadata_http_tokens}
        if spec.cpu_credits:
            request["CreditSpecification"] = {"CpuCredits": spec.cpu_credits}
        tag_specs = aws_tag_specifications("instance", spec.tags)
        if tag_specs:
            request["TagSpecifications"] = tag_specs

        response = await ctx.call(self.client.run_instances, **request)
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(
            "Launched EC2 instance",
            extra={"instance_id": instance_id, "instance_type": spec.instance_type},
        )

        created = spec.model_copy(update={"instance_id": instance_id})
        return await ctx.converge(
            self._wait_for_state(ctx, created, "running", LAUNCH_FAILED_STATES)
        )

    async def update(
        self,
        desired: Ec2Instance,
        observed: Ec2Instance,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        instance_id = observed.instance_id

        if "instance_type" in changes:
            await self._change_instance_type(desired, observed, ctx)

        if "monitoring" in changes:
            if desired.monitoring:
                await ctx.call(self.client.monitor_instances, InstanceIds=[instance_id])
            else:
                await ctx.call(self.client.unmonitor_instances, InstanceIds=[instance_id])

        if "security_group_ids" in changes:
            await ctx.call(
                self.client.modify_instance_attribute,
                InstanceId=instance_id,
                Groups=list(desired.security_group_ids),
            )

        if "metadata_http_tokens" in changes:
            await ctx.call(
                self.client.modify_instance_metadata_options,
                InstanceId=instance_id,
                HttpTokens=desired.metadata_http_tokens,
            )

    async def _change_instance_type(
        self, desired: Ec2Instance, observed: Ec2Instance, ctx: OperationContext
    ) -> None:
        instance_id = observed.instance_id
        was_running = observed.state == "running"
        logger.info(
            "Changing instance type",
            extra={
                "instance_id": instance_id,
                "from": observed.instance_type,
                "to": desired.instance_type,
            },
        )

        if observed.state != "stopped":
            await ctx.call(self.client.stop_instances, InstanceIds=[instance_id])
            await ctx.converge(
                self._wait_for_state(ctx, observed, "stopped", frozenset({"terminated"}))
            )

        await ctx.call(
            self.client.modify_instance_attribute,
            InstanceId=instance_id,
            InstanceType={"Value": desired.instance_type},
        )

        if was_running:
            await ctx.call(self.client.start_instances, InstanceIds=[instance_id])
            await ctx.converge(
                self._wait_for_state(ctx, observed, "running", LAUNCH_FAILED_STATES)
            )

    async def delete(self, observed: Ec2Instance, ctx: OperationContext) -> None:
        await ctx.call(self.client.terminate_instances, InstanceIds=[observed.instance_id])
        logger.info("Terminating EC2 instance", extra={"instance_id": observed.instance_id})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"instance {observed.instance_id} terminated",
                lambda: ctx.probe(observed),
                ctx.gone,
                SLOW_POLL,
            )
        )

    async def apply_tags(self, observed: Ec2Instance, diff: TagDiff, ctx: OperationContext) -> None:
        await apply_ec2_tags(self.client, observed.instance_id, diff, ctx)
