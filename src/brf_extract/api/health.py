"""Health check endpoint."""
import logging

from fastapi import APIRouter

from brf_extract.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/api/health/config")
async def config_check():
    """Diagnostic endpoint: shows whether critical settings are configured (no secrets)."""
    return {
        "inference_base_url": settings.inference_base_url,
        "worker_model": settings.worker_model,
        "credential_encryption_key_set": bool(settings.credential_encryption_key),
        "pool_credentials": len(settings.pool_credentials),
        "tenants": len(settings.tenant_balances),
        "markup_percent": settings.markup_percent,
        "safety_buffer_percent": settings.safety_buffer_percent,
        "max_retries": settings.max_retries,
        "semantic_routing": settings.semantic_routing,
    }
