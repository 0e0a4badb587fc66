from __future__ import annotations

from datetime import date
from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from makerspace import config, recurring

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace=config.METRICS_NAMESPACE)


@metrics.log_metrics
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, int]:
    # Triggered by an EventBridge schedule; "today" may be pinned for backfills
    pinned = event.get("detail", {}).get("today") if isinstance(event, dict) else None
    today = date.fromisoformat(pinned) if pinned else None

    summary = recurring.generate_future_instances(today)
    logger.info("Rolling series generation finished", extra=summary)

    metrics.add_metric(name="SeriesInstancesGenerated", value=summary["created_instances"], unit=MetricUnit.Count)
    if summary["failed_series"]:
        metrics.add_metric(name="SeriesGenerationFailures", value=summary["failed_series"], unit=MetricUnit.Count)
    return summary
