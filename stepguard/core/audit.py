"""
Audit trail for gated actions.

Entries are append-only. Writes are skipped when AUDIT_ENABLED is false; the
structured log line is emitted regardless.
"""

import math
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from util.logging import audit_event, sanitize_payload
from .config import AUDIT_PAGE_LIMIT_MAX, audit_enabled
from .errors import ValidationError
from .schema import AUDIT_LOG, AuditEntry
from .store import DocumentStore
from .usage import Provenance


class AuditTrail:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def log_action(self, user_id: str, user_role: str, action: str, resource: str, resource_id: str,
                   old_data: Any = None, new_data: Any = None, metadata: Dict[str, Any] = None,
                   success: bool = True, error_message: str = None,
                   provenance: Provenance = None) -> Optional[str]:
        """Record one audited action. Returns the entry id, or None when disabled."""
        if not action or not resource or not resource_id:
            raise ValidationError("Missing required fields: action, resource, resourceId")

        audit_event(
            event_type=f"{resource}.{action}",
            identifiers={"user_id": user_id, "resource_id": resource_id, "success": success},
            payload=metadata,
        )

        if not audit_enabled():
            return None

        provenance = provenance or Provenance()
        entry = AuditEntry(
            userId=user_id,
            userRole=str(user_role),
            action=action,
            resource=resource,
            resourceId=str(resource_id),
            timestamp=self.clock(),
            success=success,
            oldData=sanitize_payload(old_data) if old_data is not None else None,
            newData=sanitize_payload(new_data) if new_data is not None else None,
            metadata=sanitize_payload(metadata) if metadata is not None else None,
            errorMessage=error_message,
            ipAddress=provenance.ip_address,
            userAgent=provenance.user_agent,
        )
        return self.store.insert_one(AUDIT_LOG, entry.to_dict())

    def query(self, page: int = 1, limit: int = 50, action: str = None, resource: str = None,
              user_id: str = None, date_from: datetime = None, date_to: datetime = None) -> Dict[str, Any]:
        """Paged audit entries, newest first."""
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= AUDIT_PAGE_LIMIT_MAX:
            raise ValidationError(f"limit must be between 1 and {AUDIT_PAGE_LIMIT_MAX}")

        flt: Dict[str, Any] = {}
        if action:
            flt["action"] = {"$contains": action}
        if resource:
            flt["resource"] = resource
        if user_id:
            flt["userId"] = user_id
        if date_from or date_to:
            window = {}
            if date_from:
                window["$gte"] = date_from
            if date_to:
                window["$lte"] = date_to
            flt["timestamp"] = window

        total = self.store.count(AUDIT_LOG, flt)
        docs = self.store.find(AUDIT_LOG, flt, sort=[("timestamp", -1)], limit=limit, skip=(page - 1) * limit)

        return {
            "entries": [AuditEntry.from_dict(doc) for doc in docs],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit),
            },
        }
