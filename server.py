"""
FastAPI server for the task monitor.
Initializes the application, configures CORS and routes, starts the cache
eviction sweeps and releases the cache and HTTP client on shutdown.
"""

import os
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from taskmonitor.configs.config import config
from taskmonitor.configs.logging_config import setup_logging
from taskmonitor.core.preferences import preference_store
from taskmonitor.routes.progress_routes import router as progress_router
from taskmonitor.services.task_queries import get_task_queries

app = FastAPI(title="Task Monitor API")


@app.on_event("startup")
async def startup_event() -> None:
    """Initialize logging, load preferences and start eviction sweeps"""
    log_file = config.log_file
    setup_logging(
        config.log_level,
        enable_file_logging=log_file is not None,
        log_file=log_file or "taskmonitor.log",
        log_dir=config.log_dir,
        component="api",
    )
    await preference_store.load()
    get_task_queries().start_eviction_sweeps()
    logger.info(f"Task monitor proxying {config.api_base_url}")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Stop polling and sweeps, close the backend client"""
    await get_task_queries().close()


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(progress_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint that returns a welcome message"""
    return {"message": "Task Monitor API"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", str(config.port)))
    uvicorn_kwargs: dict[str, Any] = {"host": "0.0.0.0", "port": port}
    uvicorn.run(app, **uvicorn_kwargs)
