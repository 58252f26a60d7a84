"""
Base service class for Document Gateway services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from typing import Dict, Optional
import time
import os

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import ErrorResponse, ServiceException, current_trace_id


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Document Gateway - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.is_local else None,
            redoc_url="/redoc" if self.config.is_local else None,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.on_startup()
        try:
            yield
        finally:
            await self.on_shutdown()

    async def on_startup(self) -> None:
        """Start background resources. Override in subclasses."""

    async def on_shutdown(self) -> None:
        """Release background resources. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        origins = self.config.cors_origins or (["*"] if self.config.is_local else [])
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-ID"],
            max_age=86400,
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()
            try:
                response = await call_next(request)
                duration = time.time() - start_time

                route = request.scope.get("route")
                endpoint = getattr(route, "path", request.url.path)
                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    duration=duration
                )

                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                        "error": str(e)
                    }
                )

            healthy = all(state == "ok" for state in dependencies.values())
            self.metrics.record_health_check("ok" if healthy else "error")
            return JSONResponse(
                status_code=200 if healthy else 503,
                content={
                    "service": self.service_name,
                    "status": "ok" if healthy else "error",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "environment": self.config.env,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(
                content=self.metrics.render(),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(ServiceException)
        async def service_exception_handler(request: Request, exc: ServiceException):
            """Handle ServiceException."""
            log = self.logger.warning if exc.status_code < 500 else self.logger.error
            log(
                "Service error",
                code=exc.code,
                message=exc.message,
                details=exc.details,
                path=request.url.path,
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump()
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            """Render framework HTTP errors (unknown route, bad method) in the standard envelope."""
            message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
            if exc.status_code == 404:
                message = f"Route not found: {request.method} {request.url.path}"
            body = ErrorResponse(
                trace_id=current_trace_id(),
                code=f"HTTP_{exc.status_code}",
                message=message,
            )
            return JSONResponse(status_code=exc.status_code, content=body.model_dump())

        @self.app.exception_handler(RequestValidationError)
        async def validation_exception_handler(request: Request, exc: RequestValidationError):
            """Handle request model validation errors."""
            body = ErrorResponse(
                trace_id=current_trace_id(),
                code="INVALID_ARGUMENT",
                message="Validation error",
                details={"errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                    for err in exc.errors()
                ]},
            )
            return JSONResponse(status_code=400, content=body.model_dump())

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            details = {"error": str(exc)} if self.config.is_local else {}
            body = ErrorResponse(
                trace_id=current_trace_id(),
                code="INTERNAL_ERROR",
                message="Internal server error",
                details=details,
            )
            return JSONResponse(status_code=500, content=body.model_dump())

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
