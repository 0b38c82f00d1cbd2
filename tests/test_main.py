"""Tests for logging setup and the document runner."""

import io
import json
import logging
import sys

import pytest

from aws_mock import MockEc2Client
from azure_mock import MockArmState, mock_cloud_clients
from provisioner.config import ProviderConfig
from provisioner.convergence import CancellationToken
from provisioner.main import JsonFormatter, run_documents, setup_logging
from provisioner.provider import Provider
from provisioner.reconciler import DeleteStatus, Operation, Outcome
from provisioner.resources.azure.resource_group import ResourceGroup
from provisioner.resources.azure.virtual_network import VirtualNetwork
from provisioner.spec_loader import ResourceDocument


def record(message: str, **extra: object) -> logging.LogRecord:
    log_record = logging.LogRecord("provisioner.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(log_record, key, value)
    return log_record


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_base_fields(self) -> None:
        """Test timestamp, level, message and logger are present."""
        data = json.loads(JsonFormatter().format(record("Created VPC")))

        assert data["level"] == "INFO"
        assert data["message"] == "Created VPC"
        assert data["logger"] == "provisioner.test"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields(self) -> None:
        """Test extra= fields are flattened into the JSON object."""
        data = json.loads(
            JsonFormatter().format(record("Created VPC", vpc_id="vpc-1", fields=["a", "b"]))
        )

        assert data["vpc_id"] == "vpc-1"
        assert data["fields"] == ["a", "b"]
        assert "args" not in data
        assert "levelno" not in data

    def test_non_serializable_extra(self) -> None:
        """Test values JSON cannot encode are stringified."""
        class Opaque:
            def __str__(self) -> str:
                return "opaque"

        data = json.loads(JsonFormatter().format(record("x", value=Opaque())))

        assert data["value"] == "opaque"

    def test_exception(self) -> None:
        """Test exception text is included."""
        try:
            raise ValueError("boom")
        except ValueError:
            log_record = logging.LogRecord(
                "provisioner.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(log_record))

        assert "ValueError: boom" in data["exception"]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_replaces_own_handler(self) -> None:
        """Test repeated setup leaves a single provisioner handler."""
        root = logging.getLogger()
        try:
            setup_logging("DEBUG", stream=io.StringIO())
            handler = setup_logging("INFO", stream=io.StringIO())

            named = [h for h in root.handlers if h.get_name() == "provisioner"]
            assert named == [handler]
            assert root.level == logging.INFO
        finally:
            for h in [h for h in root.handlers if h.get_name() == "provisioner"]:
                root.removeHandler(h)

    def test_text_format(self) -> None:
        """Test the text formatter is used when JSON is off."""
        stream = io.StringIO()
        root = logging.getLogger()
        try:
            handler = setup_logging("INFO", json_output=False, stream=stream)
            logging.getLogger("provisioner.test").info("hello")

            assert not isinstance(handler.formatter, JsonFormatter)
            assert "INFO provisioner.test: hello" in stream.getvalue()
        finally:
            root.removeHandler(handler)

    def test_quiets_sdk_loggers(self) -> None:
        """Test SDK loggers are lowered to WARNING."""
        root = logging.getLogger()
        handler = setup_logging("DEBUG", stream=io.StringIO())
        try:
            assert logging.getLogger("botocore").level == logging.WARNING
            assert logging.getLogger("azure").level == logging.WARNING
        finally:
            root.removeHandler(handler)


def documents() -> list[ResourceDocument]:
    return [
        ResourceDocument(
            "azure:ResourceGroup", "group", ResourceGroup(name="rg-app", location="westeurope"), 0
        ),
        ResourceDocument(
            "azure:VirtualNetwork",
            "network",
            VirtualNetwork(
                name="vnet-hub",
                resource_group="rg-app",
                location="westeurope",
                address_spaces=["10.0.0.0/16"],
            ),
            1,
        ),
    ]


@pytest.fixture
def arm() -> MockArmState:
    return MockArmState()


@pytest.fixture
def provider(arm: MockArmState, fast_config: ProviderConfig) -> Provider:
    return Provider(fast_config, clients=mock_cloud_clients(arm, MockEc2Client()))


class TestRunDocuments:
    """Tests for run_documents."""

    @pytest.mark.asyncio
    async def test_apply_in_order(self, provider: Provider, arm: MockArmState) -> None:
        """Test apply walks documents first to last, so the group exists first."""
        results = await run_documents(provider, "apply", documents())

        assert [d.name for d, _ in results] == ["group", "network"]
        assert all(r.outcome is Outcome.SUCCESS for _, r in results)
        assert arm.resource_count == 2

    @pytest.mark.asyncio
    async def test_read(self, provider: Provider, arm: MockArmState) -> None:
        """Test read reports absent resources as ABSENT, not failure."""
        arm.add_resource_group("rg-app")

        results = await run_documents(provider, "read", documents())

        assert [r.operation for _, r in results] == [Operation.READ, Operation.READ]
        assert [r.outcome for _, r in results] == [Outcome.SUCCESS, Outcome.ABSENT]

    @pytest.mark.asyncio
    async def test_delete_in_reverse(self, provider: Provider, arm: MockArmState) -> None:
        """Test delete walks documents last to first."""
        await run_documents(provider, "apply", documents())

        results = await run_documents(provider, "delete", documents())

        assert [d.name for d, _ in results] == ["network", "group"]
        assert [r.delete_status for _, r in results] == [
            DeleteStatus.DELETED,
            DeleteStatus.DELETED,
        ]
        deletes = [name for name in arm.mutating_calls if "delete" in name]
        assert deletes == ["virtual_networks.begin_delete", "resource_groups.begin_delete"]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_run(self, provider: Provider) -> None:
        """Test a failed document is reported and later ones still run."""
        docs = list(reversed(documents()))

        results = await run_documents(provider, "apply", docs)

        assert [r.outcome for _, r in results] == [Outcome.FATAL, Outcome.SUCCESS]

    @pytest.mark.asyncio
    async def test_cancelled_run_stops(self, provider: Provider, arm: MockArmState) -> None:
        """Test a cancelled operation ends the run without touching later documents."""
        cancel = CancellationToken()
        cancel.cancel()

        results = await run_documents(provider, "apply", documents(), cancel=cancel)

        assert len(results) == 1
        assert results[0][1].outcome is Outcome.CANCELLED
        assert arm.calls_to("virtual_networks.get") == []
