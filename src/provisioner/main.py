"""Process-level plumbing for the provisioner.

Structured logging setup and the document runner used by the CLI. The
runner turns SIGINT/SIGTERM into a cancellation request so an in-flight
convergence wait ends with a Cancelled outcome instead of a traceback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, TextIO

from .convergence import CancellationToken
from .provider import Provider
from .reconciler import Operation, OperationResult, Outcome
from .spec_loader import ResourceDocument

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

# Loggers lowered to WARNING
_NOISY_LOGGERS = ("azure", "urllib3", "botocore", "boto3")

RUN_OPERATIONS = {"read": Operation.READ, "delete": Operation.DELETE}

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO", json_output: bool = True, stream: TextIO | None = None
) -> logging.Handler:
    """Install a single root handler, replacing one installed earlier."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_LOG_FORMAT))
    handler.set_name("provisioner")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "provisioner":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler


@contextmanager
def cancel_on_signals(cancel: CancellationToken) -> Iterator[None]:
    """Route SIGINT and SIGTERM to a cancellation token while active."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling", extra={"signal": sig.name})
        cancel.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, ValueError, RuntimeError) as e:
            # Only the main thread of a Unix process may install handlers
            logger.debug(
                "Signal handler not installed", extra={"signal": sig.name, "error": str(e)}
            )
        else:
            installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run_documents(
    provider: Provider,
    command: str,
    documents: list[ResourceDocument],
    *,
    cancel: CancellationToken | None = None,
) -> list[tuple[ResourceDocument, OperationResult]]:
    """Run a command ("read", "apply" or "delete") over documents, in order.

    Delete walks the documents in reverse so dependents go first. A
    cancelled operation stops the run; other failures do not.
    """
    logger = logging.getLogger(__name__)
    cancel = cancel or CancellationToken()
    ordered = list(reversed(documents)) if command == "delete" else list(documents)
    results: list[tuple[ResourceDocument, OperationResult]] = []

    with cancel_on_signals(cancel):
        for document in ordered:
            if command == "apply":
                result = await provider.apply(document.spec, cancel)
            else:
                reconciler = provider.reconciler(document.type_name)
                result = await reconciler.execute(
                    RUN_OPERATIONS[command], document.spec, cancel=cancel
                )
            results.append((document, result))

            if result.outcome is Outcome.CANCELLED:
                logger.warning(
                    "Run cancelled",
                    extra={
                        "completed": len(results),
                        "remaining": len(ordered) - len(results),
                    },
                )
                break

    return results
