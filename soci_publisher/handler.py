"""AWS Lambda entry point.

Triggered by the EventBridge "ECR Image Action" event emitted when an image
is pushed. A failure is raised back to Lambda so the invoker's retry policy
applies; success and the validation skip return the status message, as does
a malformed event.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from soci_publisher.config import config
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.orchestrator import Orchestrator
from soci_publisher.logging_setup import configure_logging
from soci_publisher.models.request import InvocationRequest

logger = logging.getLogger(__name__)

INVALID_EVENT_MESSAGE = "Exited early due to invalid invocation event"


def request_from_event(event: Mapping[str, Any]) -> InvocationRequest:
    """Build an ``InvocationRequest`` from a Lambda event.

    Accepts the EventBridge ECR event shape::

        {"region": "...", "account": "...",
         "detail": {"repository-name": "...", "image-digest": "..."}}

    or a flat mapping with ``repository_name``, ``image_digest``,
    ``aws_region`` and ``aws_account``. Missing or malformed values raise
    ``pydantic.ValidationError``.
    """
    detail = event.get("detail")
    if isinstance(detail, Mapping):
        return InvocationRequest(
            repository=detail.get("repository-name", ""),
            digest=detail.get("image-digest", ""),
            region=event.get("region", ""),
            account=event.get("account", ""),
        )
    return InvocationRequest(
        repository=event.get("repository_name", ""),
        digest=event.get("image_digest", ""),
        region=event.get("aws_region", ""),
        account=event.get("aws_account", ""),
    )


def cancellation_for(context: Any) -> CancellationToken:
    """Token expiring ``cancel_margin_seconds`` before the Lambda deadline."""
    remaining_ms = getattr(context, "get_remaining_time_in_millis", None)
    if remaining_ms is None:
        return CancellationToken()
    return CancellationToken.with_timeout(
        remaining_ms() / 1000.0 - config.cancel_margin_seconds
    )


def lambda_handler(event: Mapping[str, Any], context: Any) -> str:
    configure_logging(config.log_level, rich_output=False)
    try:
        request = request_from_event(event)
    except ValidationError as exc:
        logger.error("%s: %s", INVALID_EVENT_MESSAGE, exc)
        return INVALID_EVENT_MESSAGE

    # The workspace name is prefixed by the request id.
    request_id = getattr(context, "aws_request_id", "")
    prefix = f"{request_id}-" if request_id else None

    orchestrator = Orchestrator.from_config(config, workspace_prefix=prefix)
    result = orchestrator.run(request, cancellation_for(context))
    if result.error is not None:
        raise result.error
    logger.info("%s (%s)", result.message, result.outcome.value)
    return result.message
