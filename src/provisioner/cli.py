"""Cloud provisioner CLI (cprov).

Runs lifecycle operations over YAML resource documents.

Usage:
    cprov types                         # List resource types
    cprov validate resources.yaml       # Check documents, no cloud calls
    cprov read resources.yaml           # Show observed state
    cprov apply resources.yaml -o out.yaml
    cprov delete resources.yaml

read, apply and delete print one JSON result per document. --output writes
the documents back with cloud identifiers filled in, so the written file can
be fed to later runs.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from .config import ConfigurationError, ProviderConfig
from .diagnostics import Diagnostic, has_errors
from .errors import ValidationFailed
from .main import run_documents, setup_logging
from .provider import Provider
from .reconciler import LifecycleState, OperationResult
from .spec_loader import ResourceDocument, SpecLoadError, dump_documents, load_documents

PROG_NAME = "cprov"
VERSION = "0.1.0"


def get_provider(ctx: click.Context) -> Provider:
    """Return the Provider for this invocation, building it on first use."""
    obj = ctx.ensure_object(dict)
    provider = obj.get("provider")
    if provider is None:
        try:
            config = obj.get("config") or ProviderConfig.from_env()
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e
        provider = Provider(config)
        obj["provider"] = provider
    return provider


def load_or_fail(provider: Provider, path: Path) -> list[ResourceDocument]:
    try:
        return load_documents(path, provider.spec_type)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    except ValidationFailed as e:
        print_diagnostics(e.diagnostics)
        raise click.ClickException(str(e).splitlines()[0]) from e


def print_diagnostics(diagnostics: list[Diagnostic], label: str | None = None) -> None:
    for diagnostic in diagnostics:
        prefix = f"{label}: " if label else ""
        click.echo(f"{prefix}{diagnostic}", err=diagnostic.is_error)


def output_document(
    document: ResourceDocument, result: OperationResult, command: str
) -> dict[str, Any]:
    """Document to write back after a command."""
    if result.state is LifecycleState.ABSENT:
        return document.to_dict(document.spec.without_cloud_fields())
    if result.observed is None:
        return document.to_dict()
    if command == "read":
        return document.to_dict(result.observed)
    return document.to_dict(document.spec.with_cloud_fields_from(result.observed))


def run_command(ctx: click.Context, command: str, path: Path, output: Path | None) -> None:
    provider = get_provider(ctx)
    documents = load_or_fail(provider, path)

    results = asyncio.run(run_documents(provider, command, documents))

    for document, result in results:
        data = result.to_dict()
        if document.name:
            data["name"] = document.name
        click.echo(json.dumps(data, default=str))

    if output is not None:
        by_index = {document.index: (document, result) for document, result in results}
        written = []
        for document in documents:
            if document.index in by_index:
                written.append(output_document(*by_index[document.index], command))
            else:
                written.append(document.to_dict())
        try:
            dump_documents(output, written)
        except SpecLoadError as e:
            raise click.ClickException(str(e)) from e

    failed = [r for _, r in results if not r.success]
    if failed or len(results) < len(documents):
        ctx.exit(1)


# =============================================================================
# CLI Groups
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name=PROG_NAME)
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", help="Logging level")
@click.option(
    "--json-logs/--text-logs",
    "json_logs",
    default=True,
    help="Log format on stderr (default: JSON)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool) -> None:
    """Cloud provisioner CLI (cprov).

    Validates, reads, applies and deletes AWS and Azure resources described
    in YAML documents.

    \b
    Environment:
        AWS_REGION, AWS_PROFILE             AWS settings
        AZURE_SUBSCRIPTION_ID               Azure subscription
        POLL_INTERVAL_SCALE                 Poll interval multiplier
    """
    ctx.ensure_object(dict)
    setup_logging(log_level, json_logs, stream=sys.stderr)


@cli.command()
@click.pass_context
def types(ctx: click.Context) -> None:
    """List registered resource types."""
    for type_name in get_provider(ctx).type_names:
        click.echo(type_name)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.pass_context
def validate(ctx: click.Context, path: Path) -> None:
    """Validate resource documents without calling any cloud API."""
    provider = get_provider(ctx)
    documents = load_or_fail(provider, path)

    failed = False
    for document in documents:
        diagnostics = provider.reconciler(document.type_name).validate(document.spec)
        print_diagnostics(diagnostics, document.label)
        failed = failed or has_errors(diagnostics)

    if failed:
        raise click.ClickException("Validation failed")
    click.echo(f"{len(documents)} document(s) valid")


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write observed state here")
@click.pass_context
def read(ctx: click.Context, path: Path, output: Path | None) -> None:
    """Read the observed state of each document."""
    run_command(ctx, "read", path, output)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write observed state here")
@click.pass_context
def apply(ctx: click.Context, path: Path, output: Path | None) -> None:
    """Create absent resources and update existing ones."""
    run_command(ctx, "apply", path, output)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write documents here")
@click.pass_context
def delete(ctx: click.Context, path: Path, output: Path | None) -> None:
    """Delete each document's resource, last document first."""
    run_command(ctx, "delete", path, output)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
