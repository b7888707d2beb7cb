"""
Provider Factory - build the pluggable collaborators from settings.

- build_notifier() - webhook transport when NOTIFY_WEBHOOK_URL is set, logging otherwise
- build_estimator() - straight-line or OSRM per ESTIMATOR_PROVIDER
- default_plan_catalog() - the built-in "default" pricing plan
"""
from __future__ import annotations

from fleet_dispatch.core.config import Settings
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.domain.models import PricingPlan
from fleet_dispatch.domain.services.estimator import (
    DistanceEstimator,
    OSRMEstimator,
    StraightLineEstimator,
)
from fleet_dispatch.domain.services.fare_engine import PlanCatalog
from fleet_dispatch.domain.services.notifier import LoggingNotifier, Notifier, WebhookNotifier

logger = get_logger(__name__)


def _parse_status_codes(raw: str) -> set[int]:
    return {int(code.strip()) for code in raw.split(",") if code.strip()}


def build_notifier(settings: Settings) -> Notifier:
    if settings.NOTIFY_WEBHOOK_URL:
        notifier: Notifier = WebhookNotifier(
            url=settings.NOTIFY_WEBHOOK_URL,
            group_id=settings.NOTIFY_GROUP_ID,
            max_retries=settings.NOTIFY_MAX_RETRIES,
            transient_status_codes=_parse_status_codes(settings.NOTIFY_TRANSIENT_STATUS_CODES),
            utc_offset_hours=settings.LOCAL_UTC_OFFSET_HOURS,
        )
    else:
        notifier = LoggingNotifier(utc_offset_hours=settings.LOCAL_UTC_OFFSET_HOURS)
    logger.info("Notifier initialized", extra_data={"provider": notifier.provider_name})
    return notifier


def build_estimator(settings: Settings) -> DistanceEstimator:
    if settings.ESTIMATOR_PROVIDER == "osrm":
        estimator: DistanceEstimator = OSRMEstimator(
            base_url=settings.OSRM_BASE_URL,
            timeout_seconds=settings.OSRM_TIMEOUT_SECONDS,
        )
    elif settings.ESTIMATOR_PROVIDER == "straight_line":
        estimator = StraightLineEstimator(
            winding_factor=settings.WINDING_FACTOR,
            average_speed_kmh=settings.AVERAGE_SPEED_KMH,
        )
    else:
        raise ValueError(f"Unknown estimator provider: {settings.ESTIMATOR_PROVIDER}")
    logger.info("Estimator initialized", extra_data={"provider": estimator.provider_name})
    return estimator


def default_plan_catalog(settings: Settings) -> PlanCatalog:
    plan = PricingPlan(
        id="default",
        name="Standard",
        base_fare=settings.DEFAULT_BASE_FARE,
        per_km=settings.DEFAULT_PER_KM,
        per_minute=settings.DEFAULT_PER_MINUTE,
        night_surcharge=settings.DEFAULT_NIGHT_SURCHARGE,
        waiting_fee_per_minute=settings.DEFAULT_WAITING_FEE_PER_MINUTE,
    )
    return PlanCatalog([plan], default_plan_id="default")
