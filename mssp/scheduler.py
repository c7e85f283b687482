"""
MSSP Maintenance Scheduler

Background service for periodic housekeeping.

Each tick:
- Drops expired plugin cache entries
- Marks overdue contracts as expired
- Logs contracts expiring within the warning window

Runs in a background thread, every MSSP_SCHEDULER_INTERVAL_SECONDS.
"""

import threading
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from mssp.errors import is_operational_error
from mssp.services.contract_lifecycle import expire_overdue_contracts, contracts_expiring_within
from mssp.services.plugin_cache import PluginCache

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Periodic maintenance tasks.
    Runs in background thread.
    """

    def __init__(self, session_factory, cache: PluginCache, interval_seconds: int = 300,
                 expiry_warning_days: int = 30):
        """
        Initialize scheduler.

        Args:
            session_factory: SQLAlchemy session factory
            cache: Plugin cache to clean
            interval_seconds: Seconds between ticks
            expiry_warning_days: Window for the expiring-contract warning
        """
        self.session_factory = session_factory
        self.cache = cache
        self.interval = interval_seconds
        self.expiry_warning_days = expiry_warning_days

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.runs = 0
        self.last_run_at: Optional[datetime] = None
        self.last_result: Dict[str, Any] = {}

        logger.info(f"Maintenance scheduler initialized: interval={interval_seconds}s, "
                    f"expiry_warning={expiry_warning_days}d")

    def start(self):
        """Start scheduler in background thread"""
        if self.running:
            logger.warning("Maintenance scheduler already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._loop, daemon=True, name="mssp-maintenance")
        self.thread.start()

        logger.info("Maintenance scheduler started")

    def stop(self):
        """Stop scheduler"""
        if not self.running:
            return

        self.running = False
        self._stop_event.set()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        logger.info("Maintenance scheduler stopped")

    def _loop(self):
        """Main loop (runs in background thread)"""
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Maintenance tick error: {e}", exc_info=not is_operational_error(e))

            # Wait before next tick; stop() wakes us early
            self._stop_event.wait(self.interval)

    def run_once(self) -> Dict[str, Any]:
        """Run every maintenance task once"""
        cache_removed = self.cache.clean_expired()
        contract_result = self.trigger_contract_check()

        self.runs += 1
        self.last_run_at = datetime.utcnow()
        self.last_result = {"cacheEntriesRemoved": cache_removed, **contract_result}
        return self.last_result

    def trigger_contract_check(self) -> Dict[str, int]:
        """Expire overdue contracts and report those expiring soon"""
        db = self.session_factory()
        try:
            expired = expire_overdue_contracts(db)
            expiring = contracts_expiring_within(db, self.expiry_warning_days)
            for contract in expiring:
                days_left = (contract.end_date - datetime.utcnow()).days
                logger.warning(f"Contract '{contract.name}' (id={contract.id}) expires in {days_left} day(s)")
            return {"contractsExpired": expired, "contractsExpiringSoon": len(expiring)}
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "intervalSeconds": self.interval,
            "runs": self.runs,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastResult": self.last_result,
        }
