"""CloudWatch business-event counters for the donation funnel.

Fire-and-forget: emission never raises and never blocks the caller. boto3 is
synchronous, so calls are dispatched to a ThreadPoolExecutor. Disabled unless
METRICS_ENABLED is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from donation_engine.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_business_event(event_name: str, donation_type: str | None = None) -> None:
    """Synchronous put_metric_data for business events. Runs in thread pool."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if donation_type:
        dimensions.append({"Name": "DonationType", "Value": donation_type})
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().metrics_namespace,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": dimensions,
                "Value": 1.0,
                "Unit": "Count",
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, donation_type: str | None = None) -> None:
    """Emit a business event metric. Non-blocking, fire-and-forget."""
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, event_name, donation_type)
