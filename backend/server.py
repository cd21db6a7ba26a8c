"""
Product Enrichment API - credit metering and Wallee checkout

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8001
"""
from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import os
import logging

from database import db, client, check_db_connection
from utils.environment import ENVIRONMENT, check_provider_settings
from credit_ledger.db_init import ensure_indexes
from credit_ledger.routes import credit_router, pricing_router, images_router, payments_router, seo_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Product Enrichment API")

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    db_ok, db_error = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "environment": ENVIRONMENT,
        "database": "connected" if db_ok else db_error
    }


api_router.include_router(credit_router)
api_router.include_router(pricing_router)
api_router.include_router(images_router)
api_router.include_router(payments_router)
api_router.include_router(seo_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    # Fail fast if the database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    check_provider_settings()

    for line in await ensure_indexes(db):
        logger.info(line)
    logger.info(f"Product Enrichment API started ({ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
