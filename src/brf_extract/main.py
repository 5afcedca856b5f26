"""
BRF Extraction Gateway: FastAPI Backend
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from brf_extract.api import health, jobs, tenants
from brf_extract.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    description="Cost-aware dispatch and multi-worker extraction of BRF annual reports",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["health"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
app.include_router(tenants.router, prefix="/api/tenants", tags=["tenants"])


@app.on_event("startup")
async def startup():
    """Log configuration on startup (secrets masked)."""
    def _mask(val: str) -> str:
        if not val:
            return "(empty)"
        if len(val) <= 8:
            return "***"
        return val[:4] + "..." + val[-4:]

    logger.info("=== BRF Extraction Gateway Starting ===")
    logger.info(f"  inference_base_url : {settings.inference_base_url}")
    logger.info(f"  worker_model       : {settings.worker_model}")
    logger.info(f"  encryption_key     : {_mask(settings.credential_encryption_key)}")
    logger.info(f"  pool_credentials   : {len(settings.pool_credentials)}")
    logger.info(f"  tenants            : {len(settings.tenant_balances)}")
    logger.info(f"  markup / buffer    : {settings.markup_percent}% / {settings.safety_buffer_percent}%")
    logger.info(f"  cors_origins       : {settings.cors_origins}")

    if not settings.credential_encryption_key:
        logger.warning("CREDENTIAL_ENCRYPTION_KEY is empty -- job submission will fail!")
    if not settings.pool_credentials:
        logger.warning("POOL_CREDENTIALS is empty -- every dispatch will be rate limited!")
