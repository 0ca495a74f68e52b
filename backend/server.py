from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pymongo.errors import ConnectionFailure, PyMongoError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import (
    auth, public, entitlements, subscription, coupons, payments, ledger,
    admin_payments, admin_campaigns, admin_catalog, webhooks,
)
from services.billing_errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Finance Tracker Billing API")
    await database.connect()

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY is not set. Card checkout will fail until it is configured.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip():
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Gateway webhooks will be rejected unless ALLOW_UNSIGNED_WEBHOOKS is set.")

    from services.plan_catalog import plan_catalog
    await plan_catalog.verify_feature_ordering()

    yield

    # Shutdown
    logger.info("Shutting down Finance Tracker Billing API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Finance Tracker Billing API",
    description="Subscriptions, entitlements and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(public.router)
app.include_router(entitlements.router)
app.include_router(subscription.router)
app.include_router(coupons.router)
app.include_router(payments.router)
app.include_router(ledger.router)
app.include_router(admin_payments.router)
app.include_router(admin_campaigns.router)
app.include_router(admin_catalog.router)
app.include_router(webhooks.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Finance Tracker Billing",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Business errors: one shape for every BillingError subclass
@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.http_status >= 500:
        logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": jsonable_encoder(exc.to_detail())},
    )

# Database errors: transient transaction conflicts are retryable
@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    if isinstance(exc, ConnectionFailure) or exc.has_error_label("TransientTransactionError"):
        logger.warning(f"Transient database error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": {
                "error_code": "DATABASE_BUSY",
                "message": "Temporary database conflict, please retry",
                "retryable": True,
            }},
        )
    logger.error(f"Database error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# Validation error handler: log request_id + errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.info(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(errors, custom_encoder={Exception: str}), "request_id": request_id},
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
