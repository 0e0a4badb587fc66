from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from mangum import Mangum
from mangum.types import LambdaContext

from makerspace.api import app, metrics

logger = Logger()
handler = Mangum(app, lifespan="off")

# authorizer context key -> identity header read by the API
AUTHORIZER_HEADERS = {
    "user_id": "x-user-id",
    "email": "x-user-email",
    "role": "x-user-role",
    "certifications": "x-user-certifications",
    "tool_grants": "x-tool-grants",
}


def _apply_authorizer_identity(event: dict[str, Any]) -> None:
    """Overwrite client-sent identity headers with what the authorizer vouched for."""
    authorizer = event.get("requestContext", {}).get("authorizer") or {}
    claims = authorizer.get("lambda") or {}
    if not claims.get("user_id"):
        return

    trusted = set(AUTHORIZER_HEADERS.values())
    headers = {k: v for k, v in (event.get("headers") or {}).items() if k.lower() not in trusted}
    for key, header in AUTHORIZER_HEADERS.items():
        value = claims.get(key)
        if isinstance(value, (list, tuple, set)):
            value = ",".join(sorted(value))
        if value:
            headers[header] = str(value)
    event["headers"] = headers
    logger.debug("Identity from authorizer", extra={"user_id": claims["user_id"]})


@metrics.log_metrics
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    # Normalize minimal API Gateway HTTP API v2.0 events for local/tests
    if isinstance(event, dict) and event.get("version") == "2.0":
        request_context = event.setdefault("requestContext", {})
        http_ctx = request_context.setdefault("http", {})
        http_ctx.setdefault("sourceIp", "127.0.0.1")
        http_ctx.setdefault("userAgent", "pytest")
        request_context.setdefault("stage", "$default")
        _apply_authorizer_identity(event)

    return handler(event, context)
