"""Scoped SDK client handles.

Handlers receive LazyClient handles instead of reaching into module globals.
A handle builds its client at most once, on first use, so a provider that
only manages AWS resources never needs Azure credentials and vice versa.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import boto3
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource.resources import ResourceManagementClient

from .config import ProviderConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LazyClient(Generic[T]):
    """Construct-once, thread-safe client handle."""

    def __init__(self, factory: Callable[[], T], name: str = "client") -> None:
        self._factory = factory
        self._name = name
        self._lock = threading.Lock()
        self._client: T | None = None
        self._built = False

    @classmethod
    def of(cls, client: T, name: str = "client") -> LazyClient[T]:
        """Wrap an already constructed client."""
        handle = cls(lambda: client, name)
        handle._client = client
        handle._built = True
        return handle

    def get(self) -> T:
        if self._built:
            return self._client  # type: ignore[return-value]
        with self._lock:
            if not self._built:
                logger.debug("Constructing SDK client", extra={"client": self._name})
                self._client = self._factory()
                self._built = True
        return self._client  # type: ignore[return-value]


def get_azure_credential(client_id: str | None = None) -> Any:
    """Return an Azure credential.

    A user-assigned managed identity is used when its client id is given,
    otherwise DefaultAzureCredential walks its usual chain.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential()


@dataclass(frozen=True)
class CloudClients:
    """The SDK clients the built-in handlers need."""

    ec2: LazyClient[Any]
    resource: LazyClient[ResourceManagementClient]
    network: LazyClient[NetworkManagementClient]
    compute: LazyClient[ComputeManagementClient]

    @classmethod
    def from_config(cls, config: ProviderConfig) -> CloudClients:
        """Build lazy handles from configuration. No SDK call happens here."""

        def make_ec2() -> Any:
            config.require_aws()
            session = boto3.Session(
                profile_name=config.aws_profile, region_name=config.aws_region
            )
            return session.client("ec2")

        credential: LazyClient[Any] = LazyClient(
            lambda: get_azure_credential(config.azure_client_id), "azure-credential"
        )

        def make_resource() -> ResourceManagementClient:
            return ResourceManagementClient(credential.get(), config.require_azure())

        def make_network() -> NetworkManagementClient:
            return NetworkManagementClient(credential.get(), config.require_azure())

        def make_compute() -> ComputeManagementClient:
            return ComputeManagementClient(credential.get(), config.require_azure())

        return cls(
            ec2=LazyClient(make_ec2, "ec2"),
            resource=LazyClient(make_resource, "azure-resource"),
            network=LazyClient(make_network, "azure-network"),
            compute=LazyClient(make_compute, "azure-compute"),
        )
