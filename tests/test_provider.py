"""Tests for the resource type registry."""

from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError

from aws_mock import MockEc2Client
from azure_mock import DEFAULT_SUBSCRIPTION_ID, MockArmState, MockAzureContext, mock_cloud_clients
from provisioner.config import ProviderConfig
from provisioner.errors import InvalidArgument
from provisioner.provider import BUILTIN_HANDLERS, Provider
from provisioner.reconciler import LifecycleState, Operation, Outcome
from provisioner.resources.aws.ebs_volume import EbsVolume
from provisioner.resources.aws.vpc import Vpc, VpcHandler
from provisioner.resources.azure.managed_disk import ManagedDisk
from provisioner.resources.azure.resource_group import ResourceGroup

ALL_TYPES = [
    "aws:EbsVolume",
    "aws:Ec2Instance",
    "aws:InternetGateway",
    "aws:SecurityGroup",
    "aws:Vpc",
    "azure:ManagedDisk",
    "azure:ResourceGroup",
    "azure:VirtualNetwork",
]


@pytest.fixture
def arm() -> MockArmState:
    return MockArmState()


@pytest.fixture
def ec2() -> MockEc2Client:
    return MockEc2Client()


@pytest.fixture
def provider(arm: MockArmState, ec2: MockEc2Client, fast_config: ProviderConfig) -> Provider:
    return Provider(fast_config, clients=mock_cloud_clients(arm, ec2))


class TestRegistry:
    """Tests for handler registration and lookup."""

    def test_builtin_types(self, provider: Provider) -> None:
        """Test every built-in type is registered, sorted."""
        assert provider.type_names == ALL_TYPES
        assert sorted(BUILTIN_HANDLERS) == ALL_TYPES

    def test_unknown_type(self, provider: Provider) -> None:
        """Test an unknown type lists the valid ones."""
        with pytest.raises(InvalidArgument) as exc_info:
            provider.reconciler("gcp:Bucket")

        assert "gcp:Bucket" in str(exc_info.value)
        assert "aws:Vpc" in str(exc_info.value)

    def test_reconciler_cached(self, provider: Provider) -> None:
        """Test one Reconciler is shared per type."""
        assert provider.reconciler("aws:Vpc") is provider.reconciler("aws:Vpc")

    def test_spec_type(self, provider: Provider) -> None:
        """Test the spec class is resolved from the handler."""
        assert provider.spec_type("aws:Vpc") is Vpc
        assert provider.spec_type("azure:ManagedDisk") is ManagedDisk

    def test_handlers_built_on_first_use(self, fast_config: ProviderConfig) -> None:
        """Test factories run only when their type is first requested."""
        factory = MagicMock(side_effect=lambda clients: VpcHandler(clients.ec2))
        provider = Provider(
            fast_config, clients=mock_cloud_clients(MockArmState()), handlers={"aws:Vpc": factory}
        )

        factory.assert_not_called()
        provider.reconciler("aws:Vpc")
        provider.reconciler("aws:Vpc")
        factory.assert_called_once()

    def test_register_replaces_cached_reconciler(self, provider: Provider) -> None:
        """Test registering a type drops the reconciler built from the old factory."""
        before = provider.reconciler("aws:Vpc")

        provider.register("aws:Vpc", lambda clients: VpcHandler(clients.ec2))

        assert provider.reconciler("aws:Vpc") is not before

    def test_register_name_mismatch(self, provider: Provider) -> None:
        """Test a factory whose handler reports another type is rejected."""
        provider.register("aws:Network", lambda clients: VpcHandler(clients.ec2))

        with pytest.raises(InvalidArgument, match="reports type 'aws:Vpc'"):
            provider.reconciler("aws:Network")

    def test_no_clients_built_for_registry_use(self) -> None:
        """Test listing types and building reconcilers makes no SDK client."""
        provider = Provider(ProviderConfig())

        assert provider.type_names == ALL_TYPES
        for type_name in ALL_TYPES:
            provider.reconciler(type_name)


class TestApply:
    """Tests for create-or-update."""

    @pytest.mark.asyncio
    async def test_creates_then_updates(self, provider: Provider, arm: MockArmState) -> None:
        """Test the first apply creates and the second updates."""
        spec = ResourceGroup(name="rg-app", location="westeurope", tags={"env": "dev"})

        first = await provider.apply(spec)
        second = await provider.apply(spec.model_copy(update={"tags": {"env": "prod"}}))

        assert first.operation is Operation.CREATE
        assert first.outcome is Outcome.SUCCESS
        assert first.state is LifecycleState.READY
        assert second.operation is Operation.UPDATE
        assert second.outcome is Outcome.SUCCESS
        assert second.observed.tags == {"env": "prod"}
        assert len(arm.calls_to("resource_groups.create_or_update")) == 1

    @pytest.mark.asyncio
    async def test_no_identity_goes_straight_to_create(
        self, provider: Provider, ec2: MockEc2Client
    ) -> None:
        """Test a spec without a cloud id or natural key skips the read."""
        result = await provider.apply(EbsVolume(availability_zone="us-east-1a", size=10))

        assert result.operation is Operation.CREATE
        assert result.success
        assert ec2.call_names[0] == "create_volume"

    @pytest.mark.asyncio
    async def test_stale_cloud_id_recreates(self, provider: Provider, ec2: MockEc2Client) -> None:
        """Test a cloud id that no longer exists leads to a create."""
        result = await provider.apply(
            EbsVolume(volume_id="vol-0000000000000dead", availability_zone="us-east-1a", size=10)
        )

        assert result.operation is Operation.CREATE
        assert result.success
        assert result.observed.volume_id != "vol-0000000000000dead"

    @pytest.mark.asyncio
    async def test_failed_read_is_returned(self, provider: Provider, arm: MockArmState) -> None:
        """Test a read failure is reported without attempting a create."""
        error = HttpResponseError(message="Forbidden")
        error.status_code = 403
        arm.fail_next("resource_groups.get", error)

        result = await provider.apply(ResourceGroup(name="rg-app", location="westeurope"))

        assert result.operation is Operation.READ
        assert result.outcome is Outcome.FATAL
        assert arm.calls_to("resource_groups.create_or_update") == []


class TestProviderWithSdkConstructors:
    """Tests running the Provider through patched SDK client constructors."""

    @pytest.mark.asyncio
    async def test_only_needed_clients_built(self) -> None:
        """Test an Azure resource group apply builds only the resource client."""
        config = ProviderConfig(
            azure_subscription_id=DEFAULT_SUBSCRIPTION_ID, poll_interval_scale=0.0
        )

        with MockAzureContext() as ctx:
            provider = Provider(config)
            result = await provider.apply(ResourceGroup(name="rg-app", location="westeurope"))

            assert result.success
            assert ctx.state.resource_count == 1
            assert ctx.clients_built == ["resource"]

    @pytest.mark.asyncio
    async def test_missing_subscription_is_fatal(self) -> None:
        """Test a missing subscription surfaces on first use, as a failed result."""
        with MockAzureContext() as ctx:
            provider = Provider(ProviderConfig(poll_interval_scale=0.0))
            result = await provider.apply(ResourceGroup(name="rg-app", location="westeurope"))

            assert result.outcome is Outcome.FATAL
            assert "AZURE_SUBSCRIPTION_ID" in str(result.error)
            assert ctx.clients_built == []
