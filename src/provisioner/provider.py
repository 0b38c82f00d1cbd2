"""Resource type registry.

Maps type names such as "aws:EbsVolume" to handler factories and hands out
one Reconciler per type. Handlers are built on first use; their SDK clients
are built later still, on the first remote call.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping

from .clients import CloudClients
from .config import ProviderConfig
from .convergence import CancellationToken
from .errors import InvalidArgument
from .reconciler import LifecycleState, Operation, OperationResult, Reconciler, ResourceHandler
from .resources.aws.ebs_volume import EbsVolumeHandler
from .resources.aws.ec2_instance import Ec2InstanceHandler
from .resources.aws.internet_gateway import InternetGatewayHandler
from .resources.aws.security_group import SecurityGroupHandler
from .resources.aws.vpc import VpcHandler
from .resources.azure.managed_disk import ManagedDiskHandler
from .resources.azure.resource_group import ResourceGroupHandler
from .resources.azure.virtual_network import VirtualNetworkHandler
from .state import ResourceSpec

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[CloudClients], ResourceHandler]

BUILTIN_HANDLERS: dict[str, HandlerFactory] = {
    EbsVolumeHandler.type_name: lambda c: EbsVolumeHandler(c.ec2),
    Ec2InstanceHandler.type_name: lambda c: Ec2InstanceHandler(c.ec2),
    VpcHandler.type_name: lambda c: VpcHandler(c.ec2),
    InternetGatewayHandler.type_name: lambda c: InternetGatewayHandler(c.ec2),
    SecurityGroupHandler.type_name: lambda c: SecurityGroupHandler(c.ec2),
    ResourceGroupHandler.type_name: lambda c: ResourceGroupHandler(c.resource),
    VirtualNetworkHandler.type_name: lambda c: VirtualNetworkHandler(c.network, c.resource),
    ManagedDiskHandler.type_name: lambda c: ManagedDiskHandler(c.compute, c.resource),
}


class Provider:
    """Registry of resource types sharing one configuration and client bundle."""

    def __init__(
        self,
        config: ProviderConfig | None = None,
        clients: CloudClients | None = None,
        handlers: Mapping[str, HandlerFactory] | None = None,
    ) -> None:
        self._config = config or ProviderConfig()
        self._clients = clients or CloudClients.from_config(self._config)
        self._factories: dict[str, HandlerFactory] = dict(
            BUILTIN_HANDLERS if handlers is None else handlers
        )
        self._reconcilers: dict[str, Reconciler] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def type_names(self) -> list[str]:
        return sorted(self._factories)

    def register(self, type_name: str, factory: HandlerFactory) -> None:
        """Register or replace a handler factory."""
        with self._lock:
            self._factories[type_name] = factory
            self._reconcilers.pop(type_name, None)

    def reconciler(self, type_name: str) -> Reconciler:
        """Return the Reconciler for a type, building its handler on first use.

        Raises:
            InvalidArgument: If the type is not registered.
        """
        with self._lock:
            reconciler = self._reconcilers.get(type_name)
            if reconciler is not None:
                return reconciler

            factory = self._factories.get(type_name)
            if factory is None:
                raise InvalidArgument(
                    f"Unknown resource type '{type_name}'. Valid types: {sorted(self._factories)}"
                )
            handler = factory(self._clients)
            if handler.type_name != type_name:
                raise InvalidArgument(
                    f"Handler registered as '{type_name}' reports type '{handler.type_name}'"
                )
            reconciler = Reconciler(handler, self._config)
            self._reconcilers[type_name] = reconciler
            logger.debug("Registered reconciler", extra={"resource_type": type_name})
            return reconciler

    def spec_type(self, type_name: str) -> type[ResourceSpec]:
        return self.reconciler(type_name).handler.spec_type

    async def apply(
        self, spec: ResourceSpec, cancel: CancellationToken | None = None
    ) -> OperationResult:
        """Create the resource when it is absent, update it otherwise."""
        reconciler = self.reconciler(spec.type_name)

        if not spec.has_identity():
            return await reconciler.execute(
                Operation.CREATE, spec, cancel=cancel, previous_state=LifecycleState.ABSENT
            )

        current = await reconciler.execute(Operation.READ, spec, cancel=cancel)
        if not current.success:
            return current
        if current.state is LifecycleState.ABSENT:
            return await reconciler.execute(
                Operation.CREATE, spec, cancel=cancel, previous_state=LifecycleState.ABSENT
            )
        return await reconciler.execute(
            Operation.UPDATE, spec, cancel=cancel, previous_state=current.state
        )
