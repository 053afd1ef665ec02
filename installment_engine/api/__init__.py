"""
Installment Financing API Application Factory
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .installments import router as installments_router
from .reports import router as reports_router
from .. import __version__
from ..config import get_config
from ..errors import (
    InstallmentEngineError, ValidationError, NotFoundError, AlreadyPaidError, ConflictError
)
from ..logging_config import get_logger, log_action, setup_logging


HTTP_422_UNPROCESSABLE = 422

ERROR_STATUS_CODES = {
    ValidationError: HTTP_422_UNPROCESSABLE,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyPaidError: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
}

logger = get_logger("installments.api")


def status_code_for(error: InstallmentEngineError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Installment Financing API",
        description="Amortized installment plans, repayment tracking and collection reports",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InstallmentEngineError)
    async def engine_error_handler(request: Request, exc: InstallmentEngineError):
        code = status_code_for(exc)
        log_action(
            logger, "warning", exc.message,
            action="request_failed", resource=request.url.path,
            extra={"error": exc.code, "status_code": code, "method": request.method}
        )
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=HTTP_422_UNPROCESSABLE,
            content={
                "error": ValidationError.code,
                "message": "Request validation failed",
                "detail": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                    for err in exc.errors()
                ]
            }
        )

    # Include routers
    app.include_router(installments_router, prefix="/installments", tags=["Installments"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "installment_engine_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Installment Financing API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "installments": "/installments",
                "reports": "/reports",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "installment_engine.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
