"""
Funds Core API Application Factory
"""

from contextlib import asynccontextmanager
import uuid
from typing import Optional
from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..system import BankingSystem
from ..errors import BankingError
from ..config import get_config
from ..logging_config import correlation_scope, get_logger, setup_logging
from .dependencies import get_banking_system
from .users import router as users_router
from .client import router as client_router
from .admin import router as admin_router


logger = get_logger("funds_core.api")

REQUEST_ID_HEADER = "X-Request-ID"


def error_response(exc: BankingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()}
    )


async def banking_error_handler(request: Request, exc: BankingError):
    """Classified errors map straight to their HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return error_response(exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body/query validation failures use the same envelope"""
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []) if loc != "body")
    message = first_error.get("msg", "Validation error")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": {
            "kind": "validation_error",
            "code": "invalid_input",
            "message": f"Validation error on field '{field}': {message}",
            "context": {"field": field},
        }}
    )


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Pre-built banking system (tests); built from configuration
            at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "banking_system", None) is None:
            app.state.banking_system = BankingSystem()
        app.state.banking_system.start()
        yield
        app.state.banking_system.shutdown()

    app = FastAPI(
        title="Funds Core API",
        description="Banking funds-movement core: users, transfers, status transitions and check deposits",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.banking_system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlate_request(request: Request, call_next):
        correlation_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response

    app.add_exception_handler(BankingError, banking_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Include routers
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(client_router, prefix="/client", tags=["Client"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    def health_check(system: BankingSystem = Depends(get_banking_system)):
        """Health check endpoint"""
        health = system.health()
        return {
            **health,
            "service": "funds_core_api",
            "version": __version__,
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "funds_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        workers=config.api_workers if not debug else 1,
        reload=debug,
        log_level=config.log_level.lower()
    )


# Create the app instance for uvicorn
app = create_app()
