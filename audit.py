import logging
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import AUDIT_LOGS, create_document
from schemas import AuditLog

logger = logging.getLogger(__name__)


def record_audit(db: Database, user_id: str, action: str, table_name: str,
                 record_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> str:
    """Append one audit row for a privileged mutation"""
    entry = AuditLog(
        action=action,
        table_name=table_name,
        record_id=record_id,
        metadata=metadata or {},
        user_id=user_id,
    )
    audit_id = create_document(db, AUDIT_LOGS, entry)
    logger.info(f"Audit {action} on {table_name}/{record_id} by {user_id}")
    return audit_id
