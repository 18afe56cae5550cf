"""
Accounting API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .journal import router as journal_router
from .inventory import router as inventory_router
from .invoices import router as invoices_router
from .reports import router as reports_router
from .. import __version__
from ..exceptions import (
    AccountingError, EntryNotFoundError, ItemNotFoundError, InvoiceNotFoundError,
    InvalidTransitionError, InvalidEntryStateError, EntryAlreadyVoidedError,
    InsufficientStockError, StockShortageError, ValidationTimeoutError,
    ValidationUnavailableError
)
from ..system import AccountingSystem


# First match wins; anything else is a validation error (422)
ERROR_STATUS_CODES = [
    ((EntryNotFoundError, ItemNotFoundError, InvoiceNotFoundError), 404),
    ((InvalidTransitionError, InvalidEntryStateError, EntryAlreadyVoidedError,
      InsufficientStockError, StockShortageError), 409),
    ((ValidationTimeoutError,), 504),
    ((ValidationUnavailableError,), 502),
]


def status_code_for(error: AccountingError) -> int:
    for error_types, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_types):
            return status_code
    return 422


def create_app(system: Optional[AccountingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Accounting system to serve; one is built from configuration
            (and closed at shutdown) when omitted
    """
    owns_system = system is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_system:
            app.state.accounting_system.close()

    app = FastAPI(
        title="Accounting Engine API",
        description="Double-entry journal, weighted-average inventory and invoice lifecycle",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.accounting_system = system or AccountingSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AccountingError)
    async def accounting_error_handler(request: Request, exc: AccountingError):
        content = {"detail": str(exc), "code": exc.code}
        if isinstance(exc, StockShortageError):
            content["item_codes"] = exc.item_codes
        if isinstance(exc, (ValidationTimeoutError, ValidationUnavailableError)):
            content["attempt_id"] = exc.attempt_id
        return JSONResponse(status_code=status_code_for(exc), content=content)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "code": "INVALID_REQUEST"})

    # Include routers
    app.include_router(journal_router, prefix="/journal", tags=["Journal"])
    app.include_router(inventory_router, prefix="/inventory", tags=["Inventory"])
    app.include_router(invoices_router, prefix="/invoices", tags=["Invoices"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        system = app.state.accounting_system
        return {
            "status": "healthy",
            "service": "accounting_api",
            "version": __version__,
            "ledger_balanced": system.balance_validator.is_balanced(),
            "tax_authority": "up" if system.validator.health_check() else "down"
        }

    return app
