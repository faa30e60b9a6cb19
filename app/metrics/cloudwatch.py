"""CloudWatch business-event metrics for billing (new and cancelled subscriptions).

Fire-and-forget: failures are logged as warnings via structlog and never
raised to the caller. boto3 is synchronous, so puts run on a small
ThreadPoolExecutor off the event loop. Nothing is sent unless
``metrics_enabled`` is set.
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
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_business_event(namespace: str, event_name: str, user_id: str | None = None) -> None:
    """Synchronous put_metric_data. Runs in thread pool."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if user_id:
        dimensions.append({"Name": "UserId", "Value": user_id})
    try:
        _get_client().put_metric_data(
            Namespace=namespace,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": dimensions,
                "Value": 1.0,
                "Unit": "Count",
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event_name=event_name)


async def emit_business_event(event_name: str, user_id: str | None = None) -> None:
    """Emit a billing business event. Non-blocking, fire-and-forget."""
    settings = get_settings()
    if not settings.metrics_enabled:
        logger.debug("business_event_skipped", event_name=event_name)
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, settings.metrics_namespace, event_name, user_id)
