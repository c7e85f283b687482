"""
MSSP Service Entrypoint

FastAPI application for the MSSP business-management backend.
Includes all API routers, exception handlers, the maintenance scheduler
and startup initialization.
"""
import warnings
warnings.filterwarnings('ignore', category=DeprecationWarning, module='sqlalchemy')

from fastapi import FastAPI, Depends
import logging

from mssp import config
from mssp.api import auth, service_scopes, search, dashboard, queries, plugins, pools, contracts, financial
from mssp.database import init_db, check_db, SessionLocal
from mssp.errors import register_exception_handlers, ConfigurationError
from mssp.models import User
from mssp.scheduler import MaintenanceScheduler
from mssp.security import require_admin
from mssp.services.plugins import registry
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)

app = FastAPI(title="MSSP Business Manager")

register_exception_handlers(app)

app.include_router(auth.router)
app.include_router(service_scopes.router)
app.include_router(search.router)
app.include_router(dashboard.router)
app.include_router(queries.router)
app.include_router(plugins.router)
app.include_router(pools.router)
app.include_router(contracts.router)
app.include_router(financial.router)

# Global scheduler instance
scheduler = None


@app.on_event("startup")
def startup_init():
    """Initialize logging, database, plugins and start the scheduler"""
    global scheduler

    setup_logging("mssp", level=config.LOG_LEVEL, log_file=config.LOG_FILE or None)

    init_db()

    if config.PLUGIN_CONFIG_PATH:
        try:
            registry.load_config(config.PLUGIN_CONFIG_PATH)
        except ConfigurationError as e:
            logger.error(f"Plugin configuration not loaded: {e.message}")

    logger.info("Starting maintenance scheduler...")
    scheduler = MaintenanceScheduler(
        session_factory=SessionLocal,
        cache=registry.cache,
        interval_seconds=config.SCHEDULER_INTERVAL_SECONDS,
        expiry_warning_days=config.CONTRACT_EXPIRY_WARNING_DAYS,
    )
    scheduler.start()

    logger.info("MSSP service startup complete")


@app.on_event("shutdown")
def shutdown_cleanup():
    """Stop scheduler on shutdown"""
    global scheduler

    if scheduler:
        logger.info("Stopping maintenance scheduler...")
        scheduler.stop()

    logger.info("MSSP service shutdown complete")


@app.get("/")
def root():
    return {
        "service": "mssp",
        "message": "MSSP business-management service running",
    }


@app.get("/health")
def health():
    db_ok = check_db()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "ok" if db_ok else "unreachable",
        "scheduler": scheduler.get_status() if scheduler else {"running": False},
    }


@app.post("/api/admin/maintenance/run")
def run_maintenance(user: User = Depends(require_admin)):
    """Run the maintenance tasks immediately"""
    if scheduler is None:
        return {"success": False, "error": "Scheduler not running"}
    return {"success": True, "result": scheduler.run_once()}
