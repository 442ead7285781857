"""
FastAPI server for wallet funding and payment gateway webhooks
Run with: uvicorn webhook_server:app
"""
from contextlib import asynccontextmanager
import logging
import os
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import Config
from database import async_engine, init_database
from handlers.admin_routes import router as admin_router
from handlers.payment_webhook import router as payment_webhook_router
from handlers.wallet_routes import router as wallet_router

logging.basicConfig(
    level=logging.DEBUG if Config.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_startup_timestamp: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and report which gateways have credentials
    Shutdown: dispose the connection pool
    """
    global _startup_timestamp
    logger.info(f"🔧 Worker {os.getpid()} starting ({Config.ENVIRONMENT})...")

    await init_database()
    gateways = Config.validate_gateway_configuration()
    if not any(gateways.values()):
        logger.warning("⚠️ No payment gateway is configured; funding endpoints will be rejected")

    _startup_timestamp = time.time()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield

    await async_engine.dispose()
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title="Wallet Ledger",
    description="Wallet ledger with Paystack and Monnify funding and reconciliation",
    lifespan=lifespan,
)

app.include_router(payment_webhook_router)
app.include_router(wallet_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check():
    """Health check with database connectivity"""
    try:
        async with async_engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"❌ HEALTH_DATABASE_ERROR: {e}")
        return JSONResponse(
            content={"status": "unhealthy", "service": "wallet-ledger", "database": "unreachable"},
            status_code=503,
        )

    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    return {
        "status": "healthy",
        "service": "wallet-ledger",
        "database": "ok",
        "uptime_seconds": round(uptime, 2),
    }
