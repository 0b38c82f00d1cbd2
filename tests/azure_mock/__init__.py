"""Azure API Mock for Integration Testing.

In-memory implementations of the ARM operations the Azure handlers use,
so they can be tested without Azure connectivity.

Key Features:
- In-memory state for resource groups, virtual networks and managed disks
- Provisioning-state progression (Updating → Succeeded, or Failed)
- Deletions that keep answering "Deleting" for a few reads before 404
- Error injection per operation
- Tag patching at scope (Merge / Delete)

Usage:
    from azure_mock import MockArmState, mock_cloud_clients

    state = MockArmState()
    state.add_resource_group("rg-app")
    clients = mock_cloud_clients(state)
    handler = VirtualNetworkHandler(clients.network, clients.resource)

    # Assert on mock state
    assert state.calls_to("virtual_networks.begin_create_or_update")
"""

from .compute import MockComputeClient
from .context import MockAzureContext, mock_cloud_clients
from .network import MockNetworkClient, seed_virtual_network
from .resources import DEFAULT_SUBSCRIPTION_ID, MockArmState, MockResourceClient

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "MockArmState",
    "MockAzureContext",
    "MockComputeClient",
    "MockNetworkClient",
    "MockResourceClient",
    "mock_cloud_clients",
    "seed_virtual_network",
]
