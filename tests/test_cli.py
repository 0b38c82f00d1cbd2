"""Tests for the cprov CLI."""

import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner, Result

from aws_mock import MockEc2Client
from azure_mock import MockArmState, mock_cloud_clients
from provisioner.cli import cli
from provisioner.config import ProviderConfig
from provisioner.provider import Provider

RESOURCES = """
type: azure:ResourceGroup
name: group
spec:
  name: rg-app
  location: westeurope
---
type: azure:VirtualNetwork
name: network
spec:
  name: vnet-hub
  resource_group: rg-app
  location: westeurope
  address_spaces: [10.0.0.0/16]
"""


@pytest.fixture
def arm() -> MockArmState:
    return MockArmState()


@pytest.fixture
def provider(arm: MockArmState, fast_config: ProviderConfig) -> Provider:
    return Provider(fast_config, clients=mock_cloud_clients(arm, MockEc2Client()))


@pytest.fixture
def resources(tmp_path: Path) -> Path:
    path = tmp_path / "resources.yaml"
    path.write_text(RESOURCES, encoding="utf-8")
    return path


def invoke(provider: Provider, *args: str) -> Result:
    with patch("provisioner.cli.setup_logging"):
        return CliRunner().invoke(cli, list(args), obj={"provider": provider})


def json_lines(result: Result) -> list[dict[str, Any]]:
    return [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]


class TestTypes:
    """Tests for the types command."""

    def test_lists_types(self, provider: Provider) -> None:
        """Test every registered type is printed."""
        result = invoke(provider, "types")

        assert result.exit_code == 0
        assert result.output.splitlines() == provider.type_names


class TestValidate:
    """Tests for the validate command."""

    def test_valid(self, provider: Provider, resources: Path, arm: MockArmState) -> None:
        """Test valid documents pass without any cloud call."""
        result = invoke(provider, "validate", str(resources))

        assert result.exit_code == 0
        assert "2 document(s) valid" in result.output
        assert arm.calls == []

    def test_invalid(self, provider: Provider, tmp_path: Path) -> None:
        """Test diagnostics are printed with the document label."""
        path = tmp_path / "bad.yaml"
        path.write_text("type: azure:ResourceGroup\nname: group\nspec:\n  name: rg-app\n")

        result = invoke(provider, "validate", str(path))

        assert result.exit_code == 1
        assert "group: [error] location:" in result.output
        assert "Validation failed" in result.output

    def test_schema_error(self, provider: Provider, tmp_path: Path) -> None:
        """Test schema errors are printed with their document path."""
        path = tmp_path / "bad.yaml"
        path.write_text("type: aws:EbsVolume\nname: data\nspec:\n  size: ten\n")

        result = invoke(provider, "validate", str(path))

        assert result.exit_code == 1
        assert "data.spec.size" in result.output

    def test_missing_file(self, provider: Provider, tmp_path: Path) -> None:
        """Test a missing file is reported as an error."""
        result = invoke(provider, "validate", str(tmp_path / "missing.yaml"))

        assert result.exit_code == 1
        assert "not found" in result.output


class TestLifecycleCommands:
    """Tests for read, apply and delete."""

    def test_apply_writes_output(
        self, provider: Provider, resources: Path, tmp_path: Path, arm: MockArmState
    ) -> None:
        """Test apply prints a result per document and writes back cloud ids."""
        output = tmp_path / "out.yaml"

        result = invoke(provider, "apply", str(resources), "-o", str(output))

        assert result.exit_code == 0
        lines = json_lines(result)
        assert [line["name"] for line in lines] == ["group", "network"]
        assert [line["outcome"] for line in lines] == ["success", "success"]
        assert [line["operation"] for line in lines] == ["create", "create"]

        written = list(yaml.safe_load_all(output.read_text(encoding="utf-8")))
        assert written[0]["spec"]["id"] == arm.resource_group_id("rg-app")
        assert written[1]["spec"]["id"].endswith("/virtualNetworks/vnet-hub")
        assert written[1]["spec"]["address_spaces"] == ["10.0.0.0/16"]

    def test_failure_exit_code(self, provider: Provider, tmp_path: Path) -> None:
        """Test a failed document makes the command exit non-zero."""
        path = tmp_path / "network.yaml"
        path.write_text(RESOURCES.split("---\n")[1], encoding="utf-8")

        result = invoke(provider, "apply", str(path))

        assert result.exit_code == 1
        (line,) = json_lines(result)
        assert line["outcome"] == "fatal"
        assert "error" in line

    def test_read(self, provider: Provider, resources: Path, arm: MockArmState) -> None:
        """Test read reports present and absent resources, neither as a failure."""
        arm.add_resource_group("rg-app", tags={"env": "dev"})

        result = invoke(provider, "read", str(resources))

        assert result.exit_code == 0
        group, network = json_lines(result)
        assert group["outcome"] == "success"
        assert group["observed"]["tags"] == {"env": "dev"}
        assert network["outcome"] == "absent"

    def test_delete_after_apply(
        self, provider: Provider, resources: Path, tmp_path: Path, arm: MockArmState
    ) -> None:
        """Test delete removes everything an apply created, using the written ids."""
        output = tmp_path / "out.yaml"
        invoke(provider, "apply", str(resources), "-o", str(output))

        result = invoke(provider, "delete", str(output))

        assert result.exit_code == 0
        lines = json_lines(result)
        assert [line["name"] for line in lines] == ["network", "group"]
        assert [line["delete_status"] for line in lines] == ["deleted", "deleted"]
        assert arm.resource_count == 0
