"""Audit trail emission.

Audit writes happen after the primary mutation has been committed and are
best-effort: a failed write is logged and the caller carries on.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .models import AuditLog
from .specforge_logging import log_error_with_context
from .storage import Repository

logger = logging.getLogger("specforge.audit")


class AuditService:
    def __init__(self, repository: Repository):
        self.repository = repository

    def log(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        performed_by: str = "",
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            performed_by=performed_by,
            old_value=old_value,
            new_value=new_value,
        )
        try:
            self.repository.save(entry)
        except Exception as e:
            log_error_with_context(e, {
                "operation": "audit_log",
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
            })
            return None
        logger.debug(f"Audit {action} on {entity_type} {entity_id}")
        return entry

    def list_for_entity(self, entity_id: str) -> List[AuditLog]:
        return self.repository.list_audit_logs(entity_id)

    def list_drift_events(self) -> List[AuditLog]:
        return self.repository.all(AuditLog, lambda a: a.action == "DRIFT_DETECTED")
