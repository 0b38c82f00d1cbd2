"""Not-found normalization for vendor SDK errors.

Cloud vendors signal "this resource does not exist" in different ways:
AWS returns a ClientError carrying a resource-specific code such as
``InvalidVolume.NotFound``; Azure raises ResourceNotFoundError or an
HttpResponseError with status 404. Classifiers collapse these into one
ErrorClass so the reconciler applies a single absence rule.

Classification is deliberately narrow: only codes the handler registers are
NotFound. A subnet-not-found error raised while reading an instance does not
mean the instance is gone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


# Exception families raised by the vendor SDKs. Anything else is a local bug.
VENDOR_ERRORS: tuple[type[BaseException], ...] = (ClientError, BotoCoreError, AzureError)


class ErrorClass(str, Enum):
    """Normalized vendor error classes."""

    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ErrorClassifier(Protocol):
    """Maps a raw vendor exception to an ErrorClass."""

    def classify(self, error: BaseException) -> ErrorClass: ...


# Throttling and server-side codes that AWS documents as safe to retry
AWS_TRANSIENT_CODES: frozenset[str] = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)

AWS_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

AZURE_NOT_FOUND_CODES: frozenset[str] = frozenset(
    {"ResourceNotFound", "ResourceGroupNotFound", "NotFound"}
)

AZURE_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


def aws_error_code(error: BaseException) -> str | None:
    """Return the AWS error code of a ClientError, or None for other errors."""
    if not isinstance(error, ClientError):
        return None
    return error.response.get("Error", {}).get("Code")


@dataclass(frozen=True)
class AwsErrorClassifier:
    """Classifier for botocore errors.

    Attributes:
        not_found_codes: Error codes that mean the addressed resource is absent.
        transient_codes: Error codes that may succeed on retry.
    """

    not_found_codes: frozenset[str] = field(default_factory=frozenset)
    transient_codes: frozenset[str] = AWS_TRANSIENT_CODES

    @classmethod
    def for_codes(cls, *codes: str) -> AwsErrorClassifier:
        return cls(not_found_codes=frozenset(codes))

    def classify(self, error: BaseException) -> ErrorClass:
        if isinstance(error, AWS_TRANSIENT_EXCEPTIONS):
            return ErrorClass.TRANSIENT

        code = aws_error_code(error)
        if code is None:
            return ErrorClass.FATAL
        if code in self.not_found_codes:
            return ErrorClass.NOT_FOUND
        if code in self.transient_codes:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL


def azure_error_code(error: BaseException) -> str | None:
    """Return the ARM error code carried by an HttpResponseError, if any."""
    if not isinstance(error, HttpResponseError):
        return None
    odata = getattr(error, "error", None)
    code = getattr(odata, "code", None)
    return code if isinstance(code, str) else None


@dataclass(frozen=True)
class AzureErrorClassifier:
    """Classifier for azure-core errors.

    ARM is consistent about absence: ResourceNotFoundError (raised by the
    SDK for 404 responses) or an error body with a not-found code.
    """

    not_found_codes: frozenset[str] = AZURE_NOT_FOUND_CODES
    transient_status_codes: frozenset[int] = AZURE_TRANSIENT_STATUS_CODES

    def classify(self, error: BaseException) -> ErrorClass:
        if isinstance(error, ResourceNotFoundError):
            return ErrorClass.NOT_FOUND
        if isinstance(error, (ServiceRequestError, ServiceResponseError)):
            return ErrorClass.TRANSIENT
        if not isinstance(error, HttpResponseError):
            return ErrorClass.FATAL

        if error.status_code == 404:
            return ErrorClass.NOT_FOUND
        code = azure_error_code(error)
        if code is not None and code in self.not_found_codes:
            return ErrorClass.NOT_FOUND
        if error.status_code in self.transient_status_codes:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL
