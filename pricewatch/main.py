"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from pricewatch.ai.llm_service import llm_service
from pricewatch.api.routes import notifications, products
from pricewatch.config import settings
from pricewatch.db.models import Base
from pricewatch.db.session import engine
from pricewatch.extract.http_client import page_fetcher
from pricewatch.logging_config import setup_logging
from pricewatch.notify.channels import channel_dispatcher
from pricewatch.worker.product_lock import product_locks
from pricewatch.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, start the due-product poll, release clients on exit."""
    global scheduler

    logger.info(f"Starting Price Watch (database: {engine.url.render_as_string(hide_password=True)})")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.scheduler_enabled:
        scheduler = setup_scheduler()
        scheduler.start()
    else:
        logger.info("Scheduler disabled; products are only checked on demand")

    if not llm_service.available:
        logger.info("OPENAI_API_KEY not set; AI extraction and verification are off")

    yield

    logger.info("Shutting down...")
    if scheduler:
        # In-flight cycles are abandoned; their rows stay due and are picked up next start
        scheduler.shutdown(wait=False)
        scheduler = None

    await page_fetcher.close()
    await channel_dispatcher.close()
    await llm_service.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Price Watch",
    description="Track product prices and stock across retailers and alert on drops and restocks",
    version="0.1.0",
    lifespan=lifespan,
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    should_instrument_requests_inprogress=True,
    inprogress_labels=True,
).instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(products.router)
app.include_router(notifications.router)


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/api/status", tags=["monitoring"])
async def engine_status():
    """Scheduler state, cycles in progress and LLM usage."""
    job = scheduler.get_job("due_product_checks") if scheduler else None
    return {
        "scheduler_running": bool(scheduler and scheduler.running),
        "next_poll_at": job.next_run_time.isoformat() if job and job.next_run_time else None,
        "products_in_check": product_locks.active_count(),
        "ai_available": llm_service.available,
        "llm": llm_service.get_stats(),
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(status_code=204)


if __name__ == "__main__":
    uvicorn.run(
        "pricewatch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
    )
