"""
Soft-delete and restore for jobs, bills and payments.

Admins delete directly: the target is tombstoned and a deletionLog entry is
written. Managers queue a deletionRequests entry that an admin later approves
(tombstone + move to deletionLog) or rejects. Every entry point requires a
valid secondary credential. deletionLog entries flip deleted -> restored once.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List

from util.logging import logger
from .audit import AuditTrail
from .credentials import CredentialManager
from .errors import InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from .permissions import Role, has_capability
from .schema import (
    DELETION_DELETED,
    DELETION_LOG,
    DELETION_PENDING,
    DELETION_REJECTED,
    DELETION_REQUESTS,
    DELETION_RESTORED,
    ITEM_COLLECTIONS,
    TOMBSTONE_FIELDS,
    DeletionRecord,
    UsageAction,
)
from .store import DocumentStore
from .usage import Provenance

DECISIONS = ("approve", "reject")
LIST_KINDS = ("deleted", "pending", "all")
SUPERSEDED_REASON = "Superseded by direct deletion"


def collection_for(item_type: str) -> str:
    """Target collection for a deletable item type."""
    collection = ITEM_COLLECTIONS.get(item_type) if isinstance(item_type, str) else None
    if collection is None:
        raise ValidationError(
            f"Invalid item type. Supported: {', '.join(ITEM_COLLECTIONS)}", kind="invalid_item_type"
        )
    return collection


class DeletionWorkflow:
    def __init__(self, store: DocumentStore, credentials: CredentialManager,
                 audit: AuditTrail = None, clock: Callable[[], datetime] = datetime.now):
        if credentials.store is not store:
            raise ValueError("DeletionWorkflow and CredentialManager must share one DocumentStore")
        self.store = store
        self.credentials = credentials
        self.clock = clock
        self.audit = audit or AuditTrail(store, clock=clock)

    # Request

    def request_delete(self, item_type: str, item_id: str, reason: str, requester_id: str,
                       requester_role: str, secret: str, provenance: Provenance = None) -> Dict[str, Any]:
        """Delete directly (admin) or queue for approval (manager)."""
        collection = collection_for(item_type)
        if not item_id:
            raise ValidationError("Missing required fields: itemType, itemId")
        if not has_capability(requester_role, "canDeleteJobs"):
            raise UnauthorizedError.forbidden(
                "You don't have permission to delete items. Please contact an administrator."
            )

        credential_id = self.credentials.require_valid(secret, user_id=requester_id, provenance=provenance)
        reason = reason or "No reason provided"
        direct = Role.parse(requester_role) == Role.ADMIN

        with self.store.transaction():
            item = self.store.find_one(collection, {"id": item_id})
            if item is None:
                raise NotFoundError("Item not found")
            if item.get("deleted"):
                raise InvalidStateError.already_deleted()

            now = self.clock()
            record = DeletionRecord(
                originalId=item_id,
                itemType=item_type,
                originalData=item,
                deletedBy=requester_id,
                deletedAt=now,
                reason=reason,
                status=DELETION_DELETED if direct else DELETION_PENDING,
            )

            superseded = 0
            if direct:
                self._tombstone(collection, item_id, requester_id, reason, now)
                record_id = self.store.insert_one(DELETION_LOG, record.to_dict())
                # Queued requests for the same target can no longer be approved
                superseded = self.store.update_many(
                    DELETION_REQUESTS,
                    {"originalId": item_id, "itemType": item_type, "status": DELETION_PENDING},
                    set={
                        "status": DELETION_REJECTED,
                        "rejectedBy": requester_id,
                        "rejectedAt": now,
                        "rejectionReason": SUPERSEDED_REASON,
                        "restorable": False,
                    },
                )
                self.credentials.record_usage(
                    credential_id, requester_id, UsageAction.DELETE_BY_ITEM_TYPE[item_type],
                    target_id=item_id, target_type=item_type,
                    metadata={"reason": reason, "deletionLogId": record_id},
                    provenance=provenance,
                )
            else:
                pending = self.store.count(DELETION_REQUESTS, {
                    "originalId": item_id, "itemType": item_type, "status": DELETION_PENDING,
                })
                if pending:
                    raise InvalidStateError("A deletion request for this item is already pending")
                record_id = self.store.insert_one(DELETION_REQUESTS, record.to_dict())

            self.audit.log_action(
                requester_id, requester_role, "delete" if direct else "request_delete", item_type, item_id,
                old_data=item, provenance=provenance,
                metadata={"reason": reason, "recordId": record_id, "supersededRequests": superseded},
            )

        logger.log_deletion_event(
            "deleted" if direct else "requested", item_type, item_id, requester_id,
            status=record.status, details={"record_id": record_id, "superseded_requests": superseded},
        )
        return {"status": record.status, "id": record_id}

    # Resolve

    def resolve(self, request_id: str, admin_id: str, admin_role: str, decision: str,
                reason: str = None, secret: str = None, provenance: Provenance = None) -> Dict[str, Any]:
        """Approve or reject a queued deletion request."""
        if decision not in DECISIONS:
            raise ValidationError("Invalid action. Supported: approve, reject")
        if not has_capability(admin_role, "canResolveDeletions"):
            raise UnauthorizedError.forbidden("Only administrators can approve/reject deletion requests")

        credential_id = self.credentials.require_valid(secret, user_id=admin_id, provenance=provenance)

        with self.store.transaction():
            doc = self.store.find_one(DELETION_REQUESTS, {"id": request_id}) if request_id else None
            if doc is None:
                raise NotFoundError("Deletion request not found")
            request = DeletionRecord.from_dict(doc)
            if request.status != DELETION_PENDING:
                raise InvalidStateError(f"Deletion request is already {request.status}")

            now = self.clock()
            if decision == "approve":
                collection = collection_for(request.itemType)
                target = self.store.find_one(collection, {"id": request.originalId})
                if target is None:
                    raise NotFoundError("Item not found")
                self._tombstone(collection, request.originalId, admin_id, request.reason, now)

                request.status = DELETION_DELETED
                request.approvedBy = admin_id
                request.approvedAt = now
                request.approvalReason = reason
                request.requestId = request_id
                self.store.insert_one(DELETION_LOG, request.to_dict())
                if self.store.delete_one(DELETION_REQUESTS, {"id": request_id, "status": DELETION_PENDING}) == 0:
                    raise InvalidStateError("Deletion request was resolved concurrently")
                action = UsageAction.APPROVE_DELETION
            else:
                matched = self.store.update_one(
                    DELETION_REQUESTS, {"id": request_id, "status": DELETION_PENDING},
                    set={
                        "status": DELETION_REJECTED,
                        "rejectedBy": admin_id,
                        "rejectedAt": now,
                        "rejectionReason": reason,
                        "restorable": False,
                    },
                )
                if matched == 0:
                    raise InvalidStateError("Deletion request was resolved concurrently")
                request.status = DELETION_REJECTED
                action = UsageAction.REJECT_DELETION

            self.credentials.record_usage(
                credential_id, admin_id, action,
                target_id=request.originalId, target_type=request.itemType,
                metadata={"requestId": request_id, "reason": reason},
                provenance=provenance,
            )
            self.audit.log_action(
                admin_id, admin_role, f"{decision}_delete", request.itemType, request.originalId,
                metadata={"requestId": request_id, "reason": reason}, provenance=provenance,
            )

        logger.log_deletion_event(
            "resolved", request.itemType, request.originalId, admin_id,
            status=request.status, details={"request_id": request_id},
        )
        return {"status": request.status, "id": request_id}

    # Restore

    def restore(self, log_id: str, admin_id: str, admin_role: str, reason: str = None,
                secret: str = None, provenance: Provenance = None) -> Dict[str, Any]:
        """Clear a deleted item's tombstone. A log entry restores at most once."""
        if not has_capability(admin_role, "canRestoreDeletions"):
            raise UnauthorizedError.forbidden("Only administrators can restore deleted items")

        credential_id = self.credentials.require_valid(secret, user_id=admin_id, provenance=provenance)

        with self.store.transaction():
            doc = self.store.find_one(DELETION_LOG, {"id": log_id}) if log_id else None
            if doc is None:
                raise NotFoundError("Deletion record not found")
            record = DeletionRecord.from_dict(doc)
            if record.status != DELETION_DELETED:
                raise InvalidStateError(f"Deletion record is already {record.status}")
            if not record.restorable:
                raise InvalidStateError("Deletion record is not restorable")

            collection = collection_for(record.itemType)
            now = self.clock()

            matched = self.store.update_one(
                DELETION_LOG, {"id": log_id, "status": DELETION_DELETED},
                set={
                    "status": DELETION_RESTORED,
                    "restoredAt": now,
                    "restoredBy": admin_id,
                    "restorationReason": reason,
                },
            )
            if matched == 0:
                raise InvalidStateError("Deletion record was restored concurrently")

            restored = self.store.update_one(
                collection, {"id": record.originalId, "deleted": True},
                unset=TOMBSTONE_FIELDS,
                set={"restoredAt": now, "restoredBy": admin_id},
            )
            if restored == 0:
                raise NotFoundError("Deleted item not found")

            self.credentials.record_usage(
                credential_id, admin_id, UsageAction.RESTORE_ITEM,
                target_id=log_id, target_type="deletion_record",
                metadata={"action": "restore", "reason": reason},
                provenance=provenance,
            )
            self.audit.log_action(
                admin_id, admin_role, "restore", record.itemType, record.originalId,
                metadata={"deletionLogId": log_id, "reason": reason}, provenance=provenance,
            )

        logger.log_deletion_event("restored", record.itemType, record.originalId, admin_id,
                                  details={"log_id": log_id})
        return {"status": DELETION_RESTORED, "id": log_id}

    # Queries

    def list_records(self, caller_role: str, kind: str = "all") -> Dict[str, List[DeletionRecord]]:
        """Deleted items and pending requests, newest first."""
        if kind not in LIST_KINDS:
            raise ValidationError(f"Invalid kind. Supported: {', '.join(LIST_KINDS)}")
        if not has_capability(caller_role, "canViewDeletionRecords"):
            raise UnauthorizedError.forbidden("Only administrators can view deletion records")

        deleted: List[DeletionRecord] = []
        pending: List[DeletionRecord] = []
        if kind in ("all", "deleted"):
            docs = self.store.find(DELETION_LOG, {"status": DELETION_DELETED}, sort=[("deletedAt", -1)])
            deleted = [DeletionRecord.from_dict(d) for d in docs]
        if kind in ("all", "pending"):
            docs = self.store.find(DELETION_REQUESTS, {"status": DELETION_PENDING}, sort=[("deletedAt", -1)])
            pending = [DeletionRecord.from_dict(d) for d in docs]

        return {"deletedItems": deleted, "pendingRequests": pending}

    def get_record(self, record_id: str, caller_role: str) -> DeletionRecord:
        """Look a record up in either collection."""
        if not has_capability(caller_role, "canViewDeletionRecords"):
            raise UnauthorizedError.forbidden("Only administrators can view deletion records")
        for collection in (DELETION_LOG, DELETION_REQUESTS):
            doc = self.store.find_one(collection, {"id": record_id}) if record_id else None
            if doc is not None:
                return DeletionRecord.from_dict(doc)
        raise NotFoundError("Deletion record not found")

    def _tombstone(self, collection: str, item_id: str, actor_id: str, reason: str, now: datetime):
        matched = self.store.update_one(
            collection, {"id": item_id, "deleted": {"$ne": True}},
            set={
                "deleted": True,
                "deletedAt": now,
                "deletedBy": actor_id,
                "deletionReason": reason,
            },
        )
        if matched == 0:
            raise InvalidStateError.already_deleted()
