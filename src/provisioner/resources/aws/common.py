"""Helpers shared by the EC2-backed handlers."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from botocore.exceptions import ClientError

from ...classify import aws_error_code
from ...reconciler import OperationContext
from ...tags import TagDiff, to_aws_tag_keys, to_aws_tags

logger = logging.getLogger(__name__)


def client_token(explicit: str | None = None) -> str:
    """Idempotency token for one EC2 create call.

    EC2 keeps honouring a token after the resource it created is gone, so a
    token is only reused when the caller supplies it. Without one each call
    gets a fresh token.
    """
    return explicit or uuid.uuid4().hex


def first(items: Iterable[Any] | None) -> Any | None:
    for item in items or []:
        return item
    return None


async def apply_ec2_tags(
    client: Any, resource_id: str, diff: TagDiff, ctx: OperationContext
) -> None:
    """Apply a tag diff with at most one DeleteTags and one CreateTags call."""
    if diff.to_remove:
        await ctx.call(
            client.delete_tags, Resources=[resource_id], Tags=to_aws_tag_keys(diff.to_remove)
        )
    if diff.to_add:
        await ctx.call(client.create_tags, Resources=[resource_id], Tags=to_aws_tags(diff.to_add))


def tolerate(error: ClientError, codes: Iterable[str]) -> bool:
    """True if a ClientError carries one of the given codes."""
    code = aws_error_code(error)
    if code in set(codes):
        logger.debug("Ignoring tolerated EC2 error", extra={"error_code": code})
        return True
    return False
