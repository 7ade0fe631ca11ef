import os
import subprocess
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tastegraph.api.admin.router import router as admin_router
from tastegraph.api.recommendations.router import router as recommendations_router
from tastegraph.config.logger import app_logger, log_request_start, log_request_end, log_request_error
from tastegraph.config.settings import settings
from tastegraph.services.container import ServiceContainer, build_container
from tastegraph.utils.errors import RateLimitExceeded, ValidationError
from tastegraph.utils.responses import error_response


_git_sha_cache: Optional[str] = None


def get_git_sha() -> str:
    """Get the current Git commit SHA (cached to avoid blocking)."""
    global _git_sha_cache
    if _git_sha_cache is not None:
        return _git_sha_cache

    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=1.0,
        )
        _git_sha_cache = result.stdout.strip()[:8]
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        _git_sha_cache = "local-dev"
    return _git_sha_cache


def create_app(container_factory: Optional[Callable[[], ServiceContainer]] = None) -> FastAPI:
    """Build the FastAPI application. ``container_factory`` lets tests inject fake upstreams."""
    factory = container_factory or (lambda: build_container(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_logger.info(f"{settings.APP_NAME} starting up ({settings.ENVIRONMENT})")
        container = factory()
        container.backend.start_sweeper()
        app.state.container = container
        app_logger.info(
            f"Graph service: {settings.GRAPH_API_URL} "
            f"({'configured' if settings.graph_configured else 'not configured'}); "
            f"explanations: {'enabled' if container.explainer.is_configured else 'template only'}"
        )
        app_logger.info("Application initialized successfully")

        yield

        app_logger.info(f"{settings.APP_NAME} shutting down")
        await container.aclose()
        app_logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        contact={"name": settings.APP_AUTHOR},
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests with timing information using Loguru."""
        start_time = datetime.now()
        log_request_start(request)
        try:
            response = await call_next(request)
            log_request_end(request, response.status_code, (datetime.now() - start_time).total_seconds())
            return response
        except Exception as e:
            log_request_error(request, e, (datetime.now() - start_time).total_seconds())
            raise

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        detail = "; ".join(e["message"] for e in exc.errors) or None
        app_logger.warning(f"Rejected malformed request to {request.url.path}: {detail}")
        return JSONResponse(
            status_code=400,
            content=error_response(exc.message, detail=detail, errors=exc.errors).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=error_response(
                "Invalid recommendation request",
                detail="; ".join(f"{e['field']}: {e['message']}" for e in errors),
                errors=errors,
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limit(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content=error_response(
                "Rate limit exceeded",
                detail=f"Too many requests for tier '{exc.tier}'. Try again in {exc.retry_after} seconds.",
                retry_after=exc.retry_after,
            ).model_dump(mode="json"),
            headers={
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": str(exc.remaining),
                "X-RateLimit-Reset": str(int(exc.reset_time)),
            },
        )

    @app.get("/", tags=["health"])
    async def root():
        """Root endpoint with basic API information."""
        return {
            "message": f"Welcome to {settings.APP_NAME}",
            "version": settings.APP_VERSION,
            "status": "operational",
            "docs": "/docs",
            "redoc": "/redoc",
        }

    @app.get("/status", tags=["health"])
    async def status():
        """Status endpoint with build information for CI/CD monitoring."""
        return {
            "status": "ok",
            "build": os.getenv("BUILD_NUMBER", "local-dev"),
            "sha": os.getenv("GIT_SHA", os.getenv("GITHUB_SHA", get_git_sha())),
            "env": os.getenv("ENVIRONMENT", os.getenv("ENV", settings.ENVIRONMENT)),
        }

    @app.get("/health", tags=["health"])
    async def health(request: Request):
        """Cache health plus configuration of the upstream services."""
        container: ServiceContainer = request.app.state.container
        cache_ok = await container.backend.health_check()
        body = {
            "status": "ok" if cache_ok else "degraded",
            "cache": "available" if cache_ok else "unavailable",
            "graph_configured": settings.graph_configured,
            "explanations_configured": container.explainer.is_configured,
            "restricted_domains": sorted(container.graph_client.restricted_domains),
        }
        if not cache_ok:
            return JSONResponse(status_code=503, content=body)
        return body

    app.include_router(recommendations_router)
    app.include_router(admin_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    app_logger.info(f"Starting {settings.APP_NAME} server")
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )
