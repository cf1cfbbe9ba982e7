"""CloudWatch business-event metrics for subscription lifecycle changes.

Fire-and-forget: failures are logged as warnings and never reach the caller.
boto3 is synchronous, so put_metric_data runs on a small thread pool.
Disabled unless ``metrics_enabled`` is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().metrics_region)
    return _cw_client


def _put_business_event(namespace: str, event_name: str, dimensions: dict[str, str]) -> None:
    """Synchronous put_metric_data. Runs in the thread pool."""
    metric_dimensions = [{"Name": "Event", "Value": event_name}]
    metric_dimensions.extend({"Name": name, "Value": value} for name, value in dimensions.items())
    try:
        _get_client().put_metric_data(
            Namespace=namespace,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": metric_dimensions,
                "Value": 1.0,
                "Unit": "Count",
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, **dimensions: str | None) -> bool:
    """Emit a business event metric without blocking the request.

    Returns True if the metric was scheduled, False when metrics are disabled.
    """
    settings = get_settings()
    if not settings.metrics_enabled:
        return False

    clean = {name: str(value) for name, value in dimensions.items() if value}
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, settings.metrics_namespace, event_name, clean)
    return True
