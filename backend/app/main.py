import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.audit_logger import setup_audit_file_logger
from core.config import settings
from core.error_handling import register_exception_handlers

# ========== Loyalty & Rewards ==========
from modules.loyalty.routes.loyalty_routes import router as loyalty_router

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Loyalty Ledger API",
    description="""
    Points ledger and redemption engine for the point-of-sale backend.

    ## Features

    * **Accounts** - Enrollment, deactivation, birthday and anniversary bonuses
    * **Points Ledger** - Append-only earn, redeem, adjustment, reversal and expiration entries
    * **Earning Rules** - Configurable, stackable rules evaluated per completed sale
    * **Tiers** - Lifetime-points tiers with configurable benefits
    * **Redemptions** - Reward catalog, stock and the redemption lifecycle
    """,
    version="1.0.0",
)

# Register exception handlers for consistent error responses
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(loyalty_router)


@app.on_event("startup")
async def startup_event():
    setup_audit_file_logger(settings.audit_log_dir)
    logger.info(f"Loyalty ledger started in {settings.environment} environment")


@app.get("/health", tags=["health"])
def health_check():
    return {"status": "ok"}
