"""
Cooperative Banking API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .accounts import router as accounts_router
from .audit import router as audit_router
from .banks import router as banks_router
from .schemas import failure_response
from .transactions import router as transactions_router
from .. import __version__
from ..errors import BankingError
from ..logging_config import get_logger, log_action
from ..system import BankingSystem

logger = get_logger("coop_banking.api")


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application around a banking system"""
    app = FastAPI(
        title="Cooperative Banking API",
        description="Multi-tenant cooperative banking transaction core",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system or BankingSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BankingError)
    async def banking_error_handler(request: Request, exc: BankingError):
        log_action(logger, "warning", f"Request failed: {exc.message}",
                   action=exc.kind.value, resource=request.url.path)
        return failure_response(exc.to_failure())

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(banks_router, prefix="/banks", tags=["Cooperative Banks"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "coop_banking_api",
            "version": __version__
        }

    return app


def run_server(system: Optional[BankingSystem] = None) -> None:
    """Serve the API with uvicorn using the configured host and port"""
    import uvicorn

    app = create_app(system)
    config = app.state.banking_system.config
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
