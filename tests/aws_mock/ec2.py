"""Scripted in-memory EC2 client.

Covers the EBS volume and EC2 instance calls made by the handlers. Unlike
moto, every remote transition here walks through explicit intermediate
states (creating, modifying, stopping ...) so convergence and call ordering
can be asserted. Errors are genuine botocore ClientErrors.
"""

from __future__ import annotations

import copy
import itertools
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

from botocore.exceptions import ClientError


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    """Build a ClientError shaped like botocore's."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": 400},
        },
        operation,
    )


class _StateScript:
    """Sequence of states reported on successive reads. The last one sticks."""

    def __init__(self, *states: str) -> None:
        if not states:
            raise ValueError("at least one state is required")
        self._states = list(states)

    def next(self) -> str:
        if len(self._states) > 1:
            return self._states.pop(0)
        return self._states[0]


class MockEc2Client:
    """EC2 client double with scripted state progressions.

    Attributes:
        volume_create_states: States a new volume reports on successive describes.
        modification_states: ModificationState values after a ModifyVolume.
        launch_states: States a new instance reports on successive describes.
    """

    def __init__(self) -> None:
        self.volumes: dict[str, dict[str, Any]] = {}
        self.instances: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

        self.volume_create_states: tuple[str, ...] = ("creating", "available")
        self.volume_delete_states: tuple[str, ...] = ("deleting", "deleted")
        self.modification_states: tuple[str, ...] = ("modifying", "optimizing")
        self.launch_states: tuple[str, ...] = ("pending", "running")
        self.stop_states: tuple[str, ...] = ("stopping", "stopped")
        self.start_states: tuple[str, ...] = ("pending", "running")
        self.terminate_states: tuple[str, ...] = ("shutting-down", "terminated")

        self._scripts: dict[str, _StateScript] = {}
        self._modification_scripts: dict[str, _StateScript] = {}
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._tokens: dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def fail_next(self, method: str, error: BaseException) -> None:
        """Make the next call to a method raise the given error."""
        self._failures[method].append(error)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    @property
    def mutating_call_names(self) -> list[str]:
        return [name for name in self.call_names if not name.startswith("describe_")]

    def _record(self, method: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((method, copy.deepcopy(kwargs)))
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):017x}"

    @staticmethod
    def _apply_tag_specs(record: dict[str, Any], tag_specs: list[dict[str, Any]] | None) -> None:
        for spec in tag_specs or []:
            for tag in spec.get("Tags", []):
                record.setdefault("Tags", []).append({"Key": tag["Key"], "Value": tag["Value"]})

    def _resource(self, resource_id: str) -> dict[str, Any]:
        if resource_id in self.volumes:
            return self.volumes[resource_id]
        if resource_id in self.instances:
            return self.instances[resource_id]
        raise client_error("InvalidID", f"The ID '{resource_id}' is not valid")

    # -------------------------------------------------------------------------
    # Volumes
    # -------------------------------------------------------------------------

    def create_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_volume", kwargs)

        token = kwargs.get("ClientToken")
        if token and token in self._tokens:
            return copy.deepcopy(self.volumes[self._tokens[token]])

        volume_id = self._new_id("vol")
        volume: dict[str, Any] = {
            "VolumeId": volume_id,
            "AvailabilityZone": kwargs["AvailabilityZone"],
            "Size": kwargs.get("Size", 8),
            "VolumeType": kwargs.get("VolumeType", "gp2"),
            "Encrypted": kwargs.get("Encrypted", False),
            "MultiAttachEnabled": kwargs.get("MultiAttachEnabled", False),
            "CreateTime": datetime.now(UTC),
            "Attachments": [],
            "State": self.volume_create_states[0],
        }
        if "Iops" in kwargs:
            volume["Iops"] = kwargs["Iops"]
        elif volume["VolumeType"] == "gp3":
            volume["Iops"] = 3000
        if "Throughput" in kwargs:
            volume["Throughput"] = kwargs["Throughput"]
        elif volume["VolumeType"] == "gp3":
            volume["Throughput"] = 125
        if "SnapshotId" in kwargs:
            volume["SnapshotId"] = kwargs["SnapshotId"]
        self._apply_tag_specs(volume, kwargs.get("TagSpecifications"))

        self.volumes[volume_id] = volume
        self._scripts[volume_id] = _StateScript(*self.volume_create_states)
        if token:
            self._tokens[token] = volume_id
        return copy.deepcopy(volume)

    def describe_volumes(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_volumes", kwargs)
        result = []
        for volume_id in kwargs.get("VolumeIds", []):
            volume = self.volumes.get(volume_id)
            if volume is None:
                raise client_error(
                    "InvalidVolume.NotFound",
                    f"The volume '{volume_id}' does not exist.",
                    "DescribeVolumes",
                )
            volume["State"] = self._scripts[volume_id].next()
            result.append(copy.deepcopy(volume))
        return {"Volumes": result}

    def modify_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._record("modify_volume", kwargs)
        volume = self.volumes[kwargs["VolumeId"]]
        for request_key in ("Size", "VolumeType", "Iops", "Throughput"):
            if request_key in kwargs:
                volume[request_key] = kwargs[request_key]
        self._modification_scripts[kwargs["VolumeId"]] = _StateScript(*self.modification_states)
        return {
            "VolumeModification": {
                "VolumeId": kwargs["VolumeId"],
                "ModificationState": self.modification_states[0],
            }
        }

    def describe_volumes_modifications(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_volumes_modifications", kwargs)
        result = []
        for volume_id in kwargs.get("VolumeIds", []):
            script = self._modification_scripts.get(volume_id)
            if script is not None:
                result.append({"VolumeId": volume_id, "ModificationState": script.next()})
        return {"VolumesModifications": result}

    def delete_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_volume", kwargs)
        volume_id = kwargs["VolumeId"]
        if volume_id not in self.volumes:
            raise client_error(
                "InvalidVolume.NotFound",
                f"The volume '{volume_id}' does not exist.",
                "DeleteVolume",
            )
        self._scripts[volume_id] = _StateScript(*self.volume_delete_states)
        return {}

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def run_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("run_instances", kwargs)

        token = kwargs.get("ClientToken")
        if token and token in self._tokens:
            return {"Instances": [copy.deepcopy(self.instances[self._tokens[token]])]}

        instance_id = self._new_id("i")
        monitoring = kwargs.get("Monitoring", {}).get("Enabled", False)
        instance: dict[str, Any] = {
            "InstanceId": instance_id,
            "ImageId": kwargs["ImageId"],
            "InstanceType": kwargs["InstanceType"],
            "State": {"Name": self.launch_states[0]},
            "PrivateIpAddress": "10.0.0.10",
            "Placement": kwargs.get("Placement", {"AvailabilityZone": "us-east-1a"}),
            "Monitoring": {"State": "enabled" if monitoring else "disabled"},
            "SecurityGroups": [{"GroupId": g} for g in kwargs.get("SecurityGroupIds", [])],
            "MetadataOptions": {
                "HttpTokens": kwargs.get("MetadataOptions", {}).get("HttpTokens", "optional")
            },
            "ClientToken": token or "",
        }
        if "SubnetId" in kwargs:
            instance["SubnetId"] = kwargs["SubnetId"]
            instance["VpcId"] = "vpc-0000000000000001"
        if "KeyName" in kwargs:
            instance["KeyName"] = kwargs["KeyName"]
        self._apply_tag_specs(instance, kwargs.get("TagSpecifications"))

        self.instances[instance_id] = instance
        self._scripts[instance_id] = _StateScript(*self.launch_states)
        if token:
            self._tokens[token] = instance_id
        return {"Instances": [copy.deepcopy(instance)]}

    def describe_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("describe_instances", kwargs)
        result = []
        for instance_id in kwargs.get("InstanceIds", []):
            instance = self.instances.get(instance_id)
            if instance is None:
                raise client_error(
                    "InvalidInstanceID.NotFound",
                    f"The instance ID '{instance_id}' does not exist",
                    "DescribeInstances",
                )
            instance["State"] = {"Name": self._scripts[instance_id].next()}
            result.append(copy.deepcopy(instance))
        return {"Reservations": [{"Instances": result}] if result else []}

    def _transition(
        self, method: str, kwargs: dict[str, Any], states: tuple[str, ...]
    ) -> dict[str, Any]:
        self._record(method, kwargs)
        for instance_id in kwargs["InstanceIds"]:
            if instance_id not in self.instances:
                raise client_error("InvalidInstanceID.NotFound", instance_id, method)
            self._scripts[instance_id] = _StateScript(*states)
            self.instances[instance_id]["State"] = {"Name": states[0]}
        return {}

    def stop_instances(self, **kwargs: Any) -> dict[str, Any]:
        return self._transition("stop_instances", kwargs, self.stop_states)

    def start_instances(self, **kwargs: Any) -> dict[str, Any]:
        return self._transition("start_instances", kwargs, self.start_states)

    def terminate_instances(self, **kwargs: Any) -> dict[str, Any]:
        return self._transition("terminate_instances", kwargs, self.terminate_states)

    def modify_instance_attribute(self, **kwargs: Any) -> dict[str, Any]:
        self._record("modify_instance_attribute", kwargs)
        instance = self.instances[kwargs["InstanceId"]]
        if "InstanceType" in kwargs:
            if instance["State"]["Name"] != "stopped":
                raise client_error(
                    "IncorrectInstanceState",
                    "The instance must be stopped to change its type",
                    "ModifyInstanceAttribute",
                )
            instance["InstanceType"] = kwargs["InstanceType"]["Value"]
        if "Groups" in kwargs:
            instance["SecurityGroups"] = [{"GroupId": g} for g in kwargs["Groups"]]
        return {}

    def monitor_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("monitor_instances", kwargs)
        for instance_id in kwargs["InstanceIds"]:
            self.instances[instance_id]["Monitoring"] = {"State": "enabled"}
        return {}

    def unmonitor_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._record("unmonitor_instances", kwargs)
        for instance_id in kwargs["InstanceIds"]:
            self.instances[instance_id]["Monitoring"] = {"State": "disabled"}
        return {}

    def modify_instance_metadata_options(self, **kwargs: Any) -> dict[str, Any]:
        self._record("modify_instance_metadata_options", kwargs)
        instance = self.instances[kwargs["InstanceId"]]
        instance["MetadataOptions"] = {"HttpTokens": kwargs["HttpTokens"]}
        return {}

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def create_tags(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_tags", kwargs)
        for resource_id in kwargs["Resources"]:
            record = self._resource(resource_id)
            tags = {t["Key"]: t["Value"] for t in record.get("Tags", [])}
            tags.update({t["Key"]: t["Value"] for t in kwargs["Tags"]})
            record["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
        return {}

    def delete_tags(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_tags", kwargs)
        for resource_id in kwargs["Resources"]:
            record = self._resource(resource_id)
            removed = {t["Key"] for t in kwargs["Tags"]}
            record["Tags"] = [t for t in record.get("Tags", []) if t["Key"] not in removed]
        return {}
