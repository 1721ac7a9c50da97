from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from stockledger.core.config import get_settings
from stockledger.core.errors import LedgerError
from stockledger.routers.health import router as health_router

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="Ingredient stock ledger API - Purchases, sales consumption, transfers, weighted-average costing and end-of-day reconciliation.",
    version="0.1.0",
)

# Ledger error code -> HTTP status
ERROR_STATUS = {
    "invalid_quantity": 422,
    "invalid_cost": 422,
    "same_location": 422,
    "unit_conversion_error": 422,
    "insufficient_stock": 409,
    "not_found": 404,
    "recipe_not_found": 404,
    "contention": 503,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Translate ledger errors into structured responses."""
    status_code = ERROR_STATUS.get(exc.code, 400)
    if status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc}")
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": str(exc),
            "request_id": request.headers.get("X-Request-ID"),
        }
    )


# Global exception handler for unhandled errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected server errors with structured response."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Please try again later.",
            "request_id": request.headers.get("X-Request-ID"),
        }
    )

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for now
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
from stockledger.routers.catalog import router as catalog_router
from stockledger.routers.inventory import router as inventory_router
from stockledger.routers.ledger import router as ledger_router
from stockledger.routers.reconciliation import router as reconciliation_router
from stockledger.routers.sales import router as sales_router

app.include_router(health_router)
app.include_router(catalog_router, prefix="/api")
app.include_router(inventory_router, prefix="/api")
app.include_router(sales_router, prefix="/api")
app.include_router(reconciliation_router, prefix="/api")
app.include_router(ledger_router, prefix="/api")

@app.get("/")
def read_root():
    return {
        "message": "Welcome to the Stock Ledger API",
        "docs": "/docs",
        "health": "/health"
    }
