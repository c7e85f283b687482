"""
Audit trail helpers.

Entries are added to the caller's session and committed with the caller's
unit of work, so an audited change and its audit row land together.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mssp.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    user_id: Optional[int],
    action: str,
    entity_type: str,
    description: str,
    entity_id: Optional[int] = None,
    entity_name: Optional[str] = None,
    severity: str = "info",
    category: str = "general",
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name,
        description=description,
        severity=severity,
        category=category,
        details=metadata,
        ip_address=ip_address,
    )
    db.add(entry)
    logger.info(f"AUDIT [{action}] {entity_type}#{entity_id}: {description}")
    return entry


def recent_activity(db: Session, limit: int = 10):
    """Most recent audit entries, newest first"""
    rows = db.scalars(
        select(AuditLog).order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
    ).all()
    return [
        {
            "id": r.id,
            "user_id": r.user_id,
            "action": r.action,
            "entity_type": r.entity_type,
            "entity_id": r.entity_id,
            "entity_name": r.entity_name,
            "description": r.description,
            "severity": r.severity,
            "category": r.category,
            "timestamp": r.timestamp.isoformat() if r.timestamp else None,
        }
        for r in rows
    ]
