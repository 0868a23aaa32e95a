"""
FastAPI Payment Verification Server
Order and submission API, admin overrides, contract fee hooks, the submission worker
pool and the scheduled fee jobs.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from database import check_connection, create_tables
from jobs.consolidated_scheduler import ConsolidatedScheduler
from routes.admin_routes import router as admin_router
from routes.contract_routes import router as contract_router
from routes.dependencies import PaymentServices, build_services
from routes.payment_routes import router as payment_router
from utils.payment_errors import PaymentError, http_status_for

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
)
logger = logging.getLogger(__name__)


def create_app(
    services: Optional[PaymentServices] = None,
    enable_queue: bool = True,
    enable_scheduler: bool = True,
) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🔧 Payment server worker {os.getpid()} starting...")
        Config.validate_configuration()
        create_tables(bind=services.session_factory.kw.get("bind"))

        scheduler = None
        if enable_queue:
            await services.queue.start()
        if enable_scheduler:
            scheduler = ConsolidatedScheduler(
                ledger=services.ledger,
                order_manager=services.orders,
                queue=services.queue if enable_queue else None,
            )
            scheduler.start()
        logger.info(f"✅ Worker {os.getpid()} initialized successfully")

        yield

        logger.info(f"🔄 Payment server worker {os.getpid()} shutting down...")
        if scheduler is not None:
            scheduler.stop()
        if enable_queue:
            await services.queue.stop()

    app = FastAPI(
        title="Payment Verification Server",
        description="Receipt screenshot verification and fraud scoring",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        status_code = http_status_for(exc)
        if status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"⚠️ {request.method} {request.url.path} -> {status_code} {exc.kind}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "internal", "message": "Internal server error"})

    @app.get("/health")
    async def health():
        queue = services.queue
        database_ok = await asyncio.to_thread(check_connection, services.session_factory.kw.get("bind"))
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "environment": Config.CURRENT_ENVIRONMENT,
            "queue_running": queue.running,
            "queue_depth": queue.queue.qsize() if queue.queue is not None else 0,
        }

    app.include_router(payment_router)
    app.include_router(admin_router)
    app.include_router(contract_router)
    return app


app = create_app()


def main():
    logger.info(f"🚀 Starting payment server on {Config.SERVER_HOST}:{Config.SERVER_PORT}")
    uvicorn.run("payment_server:app", host=Config.SERVER_HOST, port=Config.SERVER_PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
