"""Main FastAPI application"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from typing import Optional
import time

from api.config import settings
from api.dependencies import ServiceContainer, build_services
from api.routers import ingestion, insights, interventions, monitoring, patterns, predictions, registry, training
from api.scheduler import start_scheduler, stop_scheduler
from api.schemas.errors import ErrorCode
from api.utils.exceptions import BehaviorRadarHTTPException, status_for
from behaviorradar.config import settings as core_settings
from behaviorradar.log_config import logger
from behaviorradar.utils.errors import BehaviorRadarError


def _error_body(error_code: str, message: str, details, status_code: int) -> dict:
    return {
        "error_code": error_code,
        "message": message,
        "details": details,
        "status_code": status_code,
    }


def create_app(services: Optional[ServiceContainer] = None, run_scheduler: Optional[bool] = None) -> FastAPI:
    """
    Build the application.
    
    Args:
        services: pre-built container (tests); built from settings at startup when omitted
        run_scheduler: start background jobs; defaults to settings.scheduler_enabled
    """
    if run_scheduler is None:
        run_scheduler = core_settings.scheduler_enabled
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events"""
        # Startup
        logger.info("Starting Behavior Radar API...")
        container = app.state.services or build_services(core_settings)
        app.state.services = container
        container.start()
        logger.info(f"Serving models: {container.model_cache.snapshot.versions or 'none loaded'}")
        
        if run_scheduler:
            start_scheduler(container)
            logger.info("Background jobs started")
        
        yield
        
        # Shutdown
        logger.info("Shutting down Behavior Radar API...")
        if run_scheduler:
            stop_scheduler()
        container.stop()
    
    app = FastAPI(
        title=settings.API_TITLE,
        description="Behavioral analytics for traders: pattern recognition, risk scoring and advisory interventions.",
        version=settings.API_VERSION,
        docs_url=None if core_settings.is_production else "/docs",
        redoc_url=None if core_settings.is_production else "/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "predictions", "description": "Behavioral predictions with insights"},
            {"name": "ingestion", "description": "Trading event ingestion"},
            {"name": "registry", "description": "Model versions, promotion and rollback"},
            {"name": "training", "description": "Training runs"},
            {"name": "insights", "description": "Recent insights per user"},
            {"name": "monitoring", "description": "Health, readiness, metrics and drift"},
        ]
    )
    app.state.services = services
    
    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["content-type", "authorization"],
    )
    
    # Access logging middleware
    @app.middleware("http")
    async def access_log_middleware(request: Request, call_next):
        """Log all API requests with timing"""
        t0 = time.time()
        response = await call_next(request)
        ms = int((time.time() - t0) * 1000)
        logger.info(f"{request.method} {request.url.path} {response.status_code} {ms}ms")
        return response
    
    # Global exception handlers
    @app.exception_handler(BehaviorRadarError)
    async def domain_exception_handler(request: Request, exc: BehaviorRadarError):
        """Map domain errors onto the standard error envelope"""
        status_code, error_code = status_for(exc)
        if status_code >= 500 and status_code != status.HTTP_503_SERVICE_UNAVAILABLE:
            logger.warning(f"{request.url.path} failed with {error_code}: {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder(_error_body(error_code, exc.message, exc.details, status_code)),
        )
    
    @app.exception_handler(BehaviorRadarHTTPException)
    async def behavior_radar_exception_handler(request: Request, exc: BehaviorRadarHTTPException):
        """Handle custom API exceptions with standard format"""
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.error_code, str(exc.detail), exc.details, exc.status_code),
        )
    
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTPException with standard format"""
        error_code_map = {
            404: ErrorCode.NOT_FOUND,
            500: ErrorCode.INTERNAL_ERROR,
            503: ErrorCode.SERVICE_UNAVAILABLE,
        }
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(
                error_code_map.get(exc.status_code, "HTTP_ERROR"),
                str(exc.detail),
                getattr(exc, "details", None),
                exc.status_code,
            ),
        )
    
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors"""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder(_error_body(
                ErrorCode.VALIDATION_ERROR,
                "Validation error",
                {"errors": exc.errors()},
                422,
            )),
        )
    
    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Catch-all for unexpected errors"""
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred", None, 500),
        )
    
    # Include routers
    app.include_router(predictions.router)
    app.include_router(ingestion.router)
    app.include_router(registry.router)
    app.include_router(training.router)
    app.include_router(insights.router)
    app.include_router(interventions.router)
    app.include_router(patterns.router)
    app.include_router(monitoring.router)
    
    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "name": "Behavior Radar API",
            "version": settings.API_VERSION,
            "status": "running"
        }
    
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,  # loguru intercepts uvicorn logging
    )
