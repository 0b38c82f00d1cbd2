"""AWS EBS volume handler.

Create idempotence: only with an explicit ``client_token``. Every create call
sends a ClientToken; without a caller-supplied one it is fresh per call, so a
later create of the same spec after a delete makes a new volume. Passing the
same ``client_token`` when retrying a create whose outcome is unknown returns
the original volume.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from ...classify import AwsErrorClassifier
from ...clients import LazyClient
from ...convergence import STANDARD_POLL, ConvergenceTarget
from ...diagnostics import Diagnostic, DiagnosticCollector
from ...errors import ValidationFailed
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

VALID_VOLUME_TYPES = frozenset({"gp2", "gp3", "io1", "io2", "st1", "sc1", "standard"})
IOPS_VOLUME_TYPES = frozenset({"gp3", "io1", "io2"})
MULTI_ATTACH_VOLUME_TYPES = frozenset({"io1", "io2"})
DEFAULT_VOLUME_TYPE = "gp3"

MIN_SIZE_GIB = 1
MAX_SIZE_GIB = 16384

IOPS_RANGES: dict[str, tuple[int, int]] = {
    "gp3": (3000, 16000),
    "io1": (100, 64000),
    "io2": (100, 256000),
}
MIN_GP3_THROUGHPUT = 125
MAX_GP3_THROUGHPUT = 1000

READY_STATES = frozenset({"available", "in-use"})
MODIFICATION_DONE_STATES = frozenset({"optimizing", "completed"})

NOT_FOUND_CODES = ("InvalidVolume.NotFound",)


class EbsVolume(ResourceSpec):
    """An EBS volume."""

    type_name: ClassVar[str] = "aws:EbsVolume"
    reserved_tag_prefixes: ClassVar[tuple[str, ...]] = (AWS_RESERVED_TAG_PREFIX,)
    id_field: ClassVar[str | None] = "volume_id"
    cloud_fields: ClassVar[tuple[str, ...]] = ("volume_id", "state", "create_time")
    optional_cloud_fields: ClassVar[tuple[str, ...]] = ("attachments",)
    immutable_fields: ClassVar[frozenset[str]] = frozenset(
        {"availability_zone", "encrypted", "snapshot_id", "multi_attach_enabled"}
    )
    create_only_fields: ClassVar[frozenset[str]] = frozenset({"kms_key_id", "client_token"})
    state_field: ClassVar[str | None] = "state"
    terminal_states: ClassVar[frozenset[str]] = frozenset({"deleted"})

    availability_zone: str | None = None
    size: int | None = None
    volume_type: str | None = None
    iops: int | None = None
    throughput: int | None = None
    encrypted: bool | None = None
    kms_key_id: str | None = None
    snapshot_id: str | None = None
    multi_attach_enabled: bool | None = None
    client_token: str | None = None

    volume_id: str | None = None
    state: str | None = None
    create_time: str | None = None
    attachments: list[str] | None = None


class EbsVolumeHandler:
    type_name = EbsVolume.type_name
    spec_type = EbsVolume
    classifier = AwsErrorClassifier.for_codes(*NOT_FOUND_CODES)
    create_idempotent = False

    def __init__(self, ec2: LazyClient[Any]) -> None:
        self._ec2 = ec2

    @property
    def client(self) -> Any:
        return self._ec2.get()

    def validate(self, spec: EbsVolume) -> list[Diagnostic]:
        c = DiagnosticCollector()

        c.require(spec.availability_zone, "availability_zone")
        if spec.size is None and spec.snapshot_id is None:
            c.error("size is required when snapshot_id is not specified", "size")
        c.check_range(
            spec.size,
            "size",
            MIN_SIZE_GIB,
            MAX_SIZE_GIB,
            f"size must be between {MIN_SIZE_GIB} and {MAX_SIZE_GIB} GiB",
        )

        volume_type = spec.volume_type or DEFAULT_VOLUME_TYPE
        type_ok = c.check_enum(
            spec.volume_type, "volume_type", VALID_VOLUME_TYPES, "Invalid volume_type"
        )

        # Type-dependent checks need a valid type
        if spec.iops is not None and type_ok:
            if volume_type not in IOPS_VOLUME_TYPES:
                c.error("iops is only valid for gp3, io1, io2 volume types", "iops")
            else:
                low, high = IOPS_RANGES[volume_type]
                c.check_range(
                    spec.iops,
                    "iops",
                    low,
                    high,
                    f"{volume_type} IOPS must be between {low:,} and {high:,}",
                )

        if spec.throughput is not None and type_ok:
            if volume_type != "gp3":
                c.error("throughput is only valid for gp3 volume type", "throughput")
            else:
                c.check_range(
                    spec.throughput,
                    "throughput",
                    MIN_GP3_THROUGHPUT,
                    MAX_GP3_THROUGHPUT,
                    f"throughput must be between {MIN_GP3_THROUGHPUT} "
                    f"and {MAX_GP3_THROUGHPUT} MiB/s",
                )

        if spec.multi_attach_enabled and type_ok and volume_type not in MULTI_ATTACH_VOLUME_TYPES:
            c.error(
                "multi_attach_enabled is only valid for io1/io2 volume types",
                "multi_attach_enabled",
            )

        if spec.encrypted is False and spec.kms_key_id:
            c.error("kms_key_id requires encrypted to be true", "kms_key_id")

        c.check_length(spec.client_token, "client_token", 1, 64)
        validate_aws_tags(c, spec.tags)
        return c.diagnostics

    def fetch(self, spec: EbsVolume) -> EbsVolume | None:
        if not spec.volume_id:
            return None
        response = self.client.describe_volumes(VolumeIds=[spec.volume_id])
        volume = first(response.get("Volumes"))
        if volume is None:
            return None
        return self._to_spec(volume)

    @staticmethod
    def _to_spec(volume: dict[str, Any]) -> EbsVolume:
        create_time = volume.get("CreateTime")
        return EbsVolume(
            availability_zone=volume.get("AvailabilityZone"),
            size=volume.get("Size"),
            volume_type=volume.get("VolumeType"),
            iops=volume.get("Iops"),
            throughput=volume.get("Throughput"),
            encrypted=volume.get("Encrypted"),
            kms_key_id=volume.get("KmsKeyId"),
            snapshot_id=volume.get("SnapshotId") or None,
            multi_attach_enabled=volume.get("MultiAttachEnabled"),
            volume_id=volume.get("VolumeId"),
            state=volume.get("State"),
            create_time=(
                create_time.isoformat() if hasattr(create_time, "isoformat") else create_time
            ),
            attachments=[
                a["InstanceId"] for a in volume.get("Attachments", []) if a.get("InstanceId")
            ],
            tags=from_aws_tags(volume.get("Tags")),
        )

    async def create(self, spec: EbsVolume, ctx: OperationContext) -> EbsVolume:
        volume_type = spec.volume_type or DEFAULT_VOLUME_TYPE
        request: dict[str, Any] = {
            "AvailabilityZone": spec.availability_zone,
            "VolumeType": volume_type,
            "ClientToken": client_token(spec.client_token),
        }
        if spec.size is not None:
            request["Size"] = spec.size
        if spec.iops is not None and volume_type in IOPS_VOLUME_TYPES:
            request["Iops"] = spec.iops
        if spec.throughput is not None and volume_type == "gp3":
            request["Throughput"] = spec.throughput
        if spec.encrypted is not None:
            request["Encrypted"] = spec.encrypted
        if spec.kms_key_id:
            request["KmsKeyId"] = spec.kms_key_id
            request["Encrypted"] = True
        if spec.snapshot_id:
            request["SnapshotId"] = spec.snapshot_id
        if spec.multi_attach_enabled is not None and volume_type in MULTI_ATTACH_VOLUME_TYPES:
            request["MultiAttachEnabled"] = spec.multi_attach_enabled
        tag_specs = aws_tag_specifications("volume", spec.tags)
        if tag_specs:
            request["TagSpecifications"] = tag_specs

        response = await ctx.call(self.client.create_volume, **request)
        volume_id = response["VolumeId"]
        logger.info(
            "Created EBS volume",
            extra={"volume_id": volume_id, "size": spec.size, "volume_type": volume_type},
        )

        created = spec.model_copy(update={"volume_id": volume_id})
        return await ctx.converge(
            ConvergenceTarget.from_policy(
                f"volume {volume_id} available",
                lambda: ctx.probe(created),
                lambda o: not is_absent(o) and o.state in READY_STATES,
                STANDARD_POLL,
                is_failed=lambda o: not is_absent(o) and o.state == "error",
            )
        )

    async def update(
        self,
        desired: EbsVolume,
        observed: EbsVolume,
        changes: dict[str, tuple[Any, Any]],
        ctx: OperationContext,
    ) -> None:
        if "size" in changes and observed.size is not None and desired.size < observed.size:
            raise ValidationFailed(
                [
                    Diagnostic.error(
                        "Cannot decrease EBS volume size",
                        "size",
                        detail=f"observed {observed.size} GiB, desired {desired.size} GiB",
                    )
                ]
            )

        # One ModifyVolume covers every modifiable attribute
        request: dict[str, Any] = {"VolumeId": observed.volume_id}
        if "size" in changes:
            request["Size"] = desired.size
        if "volume_type" in changes:
            request["VolumeType"] = desired.volume_type
        if "iops" in changes:
            request["Iops"] = desired.iops
        if "throughput" in changes:
            request["Throughput"] = desired.throughput
        if len(request) == 1:
            return

        await ctx.call(self.client.modify_volume, **request)
        logger.info(
            "Modified EBS volume",
            extra={"volume_id": observed.volume_id, "fields": sorted(k for k in changes)},
        )

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"volume {observed.volume_id} modification",
                lambda: ctx.call(self._modification_state, observed.volume_id),
                lambda state: state in MODIFICATION_DONE_STATES,
                STANDARD_POLL,
                is_failed=lambda state: state == "failed",
            )
        )

    def _modification_state(self, volume_id: str) -> str | None:
        response = self.client.describe_volumes_modifications(VolumeIds=[volume_id])
        modification = first(response.get("VolumesModifications"))
        if modification is None:
            return None
        return modification.get("ModificationState")

    async def delete(self, observed: EbsVolume, ctx: OperationContext) -> None:
        await ctx.call(self.client.delete_volume, VolumeId=observed.volume_id)
        logger.info("Deleting EBS volume", extra={"volume_id": observed.volume_id})

        await ctx.converge(
            ConvergenceTarget.from_policy(
                f"volume {observed.volume_id} deleted",
                lambda: ctx.probe(observed),
                ctx.gone,
                STANDARD_POLL,
            )
        )

    async def apply_tags(self, observed: EbsVolume, diff: TagDiff, ctx: OperationContext) -> None:
        await apply_ec2_tags(self.client, observed.volume_id, diff, ctx)
