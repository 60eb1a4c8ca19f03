"""
API v1 Router Module - Consensus Mask Aggregation

All v1 endpoints are prefixed with /api/v1/

- /api/v1/aggregation/* - Job creation, run submission, results
- /api/v1/metrics       - Prometheus scrape endpoint
"""

from fastapi import APIRouter

from src.api.v1.aggregation import router as aggregation_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(aggregation_router, prefix="/aggregation", tags=["aggregation"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
