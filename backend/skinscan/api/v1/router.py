"""
API v1 router: aggregates all v1 route modules.
"""

from fastapi import APIRouter

from skinscan.api.v1.health import router as health_router
from skinscan.api.v1.inference import router as inference_router
from skinscan.api.v1.shopify import router as shopify_router
from skinscan.api.v1.uploads import router as uploads_router

api_v1_router = APIRouter()

api_v1_router.include_router(health_router)
api_v1_router.include_router(uploads_router)
api_v1_router.include_router(inference_router)
api_v1_router.include_router(shopify_router)
