"""Prometheus metrics endpoint router.

Exposes /metrics endpoint for Prometheus scraping and refreshes the
store-derived gauges before each scrape.
"""

import duckdb
import structlog
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from metahub_service.branch_repository import BranchRepository
from metahub_service.config import settings
from metahub_service.database import metadata_db
from metahub_service.metrics import (
    BRANCHES_TOTAL,
    METAHUBS_TOTAL,
    set_service_info,
)

logger = structlog.get_logger()

router = APIRouter(tags=["metrics"])


def collect_store_metrics() -> None:
    """Refresh gauges that are derived from the shared store."""
    try:
        METAHUBS_TOTAL.set(metadata_db.count_metahubs())
        with metadata_db.connection() as conn:
            BRANCHES_TOTAL.set(BranchRepository(conn).count())
    except duckdb.Error as e:
        logger.error("metrics_collection_failed", error=str(e))


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics endpoint",
    description="Returns metrics in Prometheus text format for scraping.",
)
def get_metrics():
    """
    Expose Prometheus metrics.

    This endpoint is intentionally not authenticated to allow
    Prometheus scraping without credentials.
    """
    set_service_info(version=settings.api_version, duckdb_version=duckdb.__version__)
    collect_store_metrics()

    return PlainTextResponse(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
