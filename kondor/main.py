"""KONDOR — FastAPI Application Entry Point.

Fact materialization and metrics query engine.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kondor.api.binding_routes import router as binding_router
from kondor.api.ga4_routes import router as ga4_router
from kondor.api.metrics_routes import router as metrics_router
from kondor.core.errors import KondorError
from kondor.core.logging import get_logger
from kondor.database import init_db, test_connection
from kondor.runtime import Runtime, build_runtime

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


def create_app(runtime: Optional[Runtime] = None, run_scheduler: Optional[bool] = None) -> FastAPI:
    """Build the API; ``runtime`` is created on startup when not supplied."""
    run_scheduler = (not IS_SERVERLESS) if run_scheduler is None else run_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        logger.info("🚀 KONDOR starting up...")
        logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
        rt = app.state.runtime or build_runtime()
        app.state.runtime = rt
        db_ok = await test_connection(rt.engine)
        if db_ok:
            try:
                await init_db(rt.engine)
            except Exception as e:
                logger.error(f"❌ Table creation failed: {e}")
        else:
            logger.error("❌ Database NOT connected — endpoints will fail")
        if run_scheduler:
            rt.queue.start()
        yield
        if run_scheduler:
            rt.queue.stop()
        if runtime is None:
            await rt.close()
        logger.info("KONDOR shut down")

    app = FastAPI(
        title="KONDOR",
        description="Unified daily marketing facts — materialize GA4/ads metrics per brand and answer aggregate metric queries.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KondorError)
    async def kondor_error_handler(request: Request, exc: KondorError):
        if exc.status_code >= 500:
            logger.error(
                f"❌ {request.method} {request.url.path} failed: {exc}",
                extra={"error_code": exc.code, "status_code": exc.status_code},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    # Routers
    app.include_router(metrics_router)
    app.include_router(binding_router)
    app.include_router(ga4_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "kondor",
            "version": "1.0.0",
        }

    return app


app = create_app()
