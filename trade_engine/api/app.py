"""
FastAPI application for the trade engine.

    uvicorn trade_engine.api.app:app

The TradingService is built from the environment at startup unless one is
passed to create_app() (tests do this with fakes behind it).
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from trade_engine import __version__
from trade_engine.api.errors import make_error_response
from trade_engine.api.routes import router as trading_router
from trade_engine.config import get_engine_config
from trade_engine.errors import TradeEngineError
from trade_engine.logging_config import setup_logging
from trade_engine.trading_service import TradingService

logger = logging.getLogger("trade_engine.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management."""
    owns_service = app.state.service is None
    if owns_service:
        config = get_engine_config()
        setup_logging(
            log_dir=config.log_dir,
            level=config.log_level,
            json_format=config.json_logs,
        )
        app.state.service = TradingService.from_config(config)
        logger.info("Trade engine started")

    yield

    if owns_service:
        logger.info("Shutting down trade engine...")
        await app.state.service.close()
        app.state.service = None


def create_app(service: TradingService = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Trade Engine API",
        description="Agent trade execution and position tracking",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.state.service = service

    origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TradeEngineError)
    async def engine_exception_handler(request: Request, exc: TradeEngineError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc.message}")
        body = exc.to_dict()
        return JSONResponse(
            status_code=exc.status_code,
            content=make_error_response(body["code"], body["message"], body["details"]),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=make_error_response("VAL_001", details={"errors": errors}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error_map = {
            400: "VAL_001",
            404: "SYS_002",
            500: "SYS_003",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content=make_error_response(error_map.get(exc.status_code, "SYS_003"), str(exc.detail)),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=make_error_response("SYS_003", "Internal server error"),
        )

    app.include_router(trading_router)

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "trade-engine",
            "version": __version__,
        }

    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run(
        "trade_engine.api.app:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8766")),
        reload=os.getenv("API_RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
