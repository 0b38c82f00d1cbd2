"""Mock Azure ComputeManagementClient (managed disks only)."""

from __future__ import annotations

import copy

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.compute.models import Disk, DiskUpdate

from .resources import MockArmState, _MockLROPoller, utc_now

DISK_TYPE = "Microsoft.Compute/disks"

# DiskUpdate attributes copied onto the stored disk when set
PATCHABLE_ATTRIBUTES = (
    "disk_size_gb",
    "sku",
    "disk_iops_read_write",
    "disk_m_bps_read_write",
    "tags",
)


class MockComputeClient:
    def __init__(self, state: MockArmState) -> None:
        self._state = state
        self.disks = _MockDisksOperations(state)


class _MockDisksOperations:
    def __init__(self, state: MockArmState) -> None:
        self._state = state

    def _id(self, resource_group_name: str, disk_name: str) -> str:
        return self._state.resource_id(resource_group_name, DISK_TYPE, disk_name)

    def get(self, resource_group_name: str, disk_name: str) -> Disk:
        self._state.record("disks.get", resource_group_name, disk_name)
        return self._state.read(self._id(resource_group_name, disk_name), "disk")

    def begin_create_or_update(
        self, resource_group_name: str, disk_name: str, disk: Disk
    ) -> _MockLROPoller:
        self._state.record("disks.begin_create_or_update", resource_group_name, disk_name, disk)
        resource_id = self._id(resource_group_name, disk_name)

        model = copy.deepcopy(disk)
        model.id = resource_id
        model.name = disk_name
        model.disk_state = "Unattached"
        model.time_created = utc_now()

        existing = self._state.get(resource_id)
        if existing is not None:
            existing.model = model
            self._state.restart(existing)
        else:
            self._state.put(resource_id, model, resource_group=resource_group_name)
        return _MockLROPoller(copy.deepcopy(model))

    def begin_update(
        self, resource_group_name: str, disk_name: str, disk: DiskUpdate
    ) -> _MockLROPoller:
        self._state.record("disks.begin_update", resource_group_name, disk_name, disk)
        record = self._state.get(self._id(resource_group_name, disk_name))
        if record is None:
            raise ResourceNotFoundError(message=f"The disk '{disk_name}' was not found.")

        for attribute in PATCHABLE_ATTRIBUTES:
            value = getattr(disk, attribute, None)
            if value is not None:
                setattr(record.model, attribute, value)
        self._state.restart(record)
        return _MockLROPoller(copy.deepcopy(record.model))

    def begin_delete(self, resource_group_name: str, disk_name: str) -> _MockLROPoller:
        self._state.record("disks.begin_delete", resource_group_name, disk_name)
        self._state.begin_delete(self._id(resource_group_name, disk_name), "disk")
        return _MockLROPoller(None)
