"""
SFD Lending API Application Factory
"""

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..exceptions import (
    ConcurrentUpdateError, InsufficientSubsidyError, InvalidTransitionError,
    NotFoundError, PlanInactiveError, SFDLendingError, StaleRecordError, ValidationError
)
from .plans import router as plans_router
from .loans import router as loans_router
from .subsidies import router as subsidies_router
from .activity import router as activity_router


logger = logging.getLogger("sfd_lending.api")

# Checked in order, first match wins
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ValidationError, 422),
    (PlanInactiveError, 409),
    (InvalidTransitionError, 409),
    (InsufficientSubsidyError, 409),
    (ConcurrentUpdateError, 503),
    (StaleRecordError, 503),
)


def status_code_for(error: SFDLendingError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return status_code
    return 400


async def lending_error_handler(request: Request, exc: SFDLendingError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.info(f"{request.method} {request.url.path} -> {status_code} {type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="SFD Lending Engine API",
        description="Loan lifecycle and subsidy allocation engine for MEREF and SFDs",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SFDLendingError, lending_error_handler)

    # Include routers
    app.include_router(plans_router, prefix="/plans", tags=["Loan Plans"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(subsidies_router, prefix="/subsidies", tags=["Subsidies"])
    app.include_router(activity_router, prefix="/activity", tags=["Activity"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "sfd_lending_api",
            "version": __version__
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "sfd_lending.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


# Create the app instance for uvicorn
app = create_app()
