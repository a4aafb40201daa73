"""
Approval workflows - queued requests for privileged actions.

pending -> approved | rejected. Both targets are terminal. Resolution and the
approved request's side effect commit together or not at all.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from util.logging import logger
from .audit import AuditTrail
from .credentials import CredentialManager
from .effects import DEFAULT_EFFECTS, Effect, JOBS, BILLS, attach_subtask
from .errors import InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from .permissions import Role, can_approve, can_request, has_capability
from .schema import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    APPROVAL_REQUESTS,
    APPROVAL_STATUSES,
    APPROVAL_TYPES,
    ApprovalRequest,
    UsageAction,
)
from .store import DocumentStore
from .usage import Provenance

DECISIONS = ("approve", "reject")

# Request types whose approval consumes the secondary credential
PAYMENT_USAGE_ACTIONS = {
    "payment": UsageAction.APPROVE_PAYMENT,
    "credit_payment": UsageAction.COMPLETE_PAYMENT,
}


class ApprovalWorkflow:
    """Manages approval requests persisted in the document store."""

    def __init__(self, store: DocumentStore, credentials: CredentialManager = None,
                 audit: AuditTrail = None, clock: Callable[[], datetime] = datetime.now,
                 effects: Dict[str, Effect] = None):
        if credentials is not None and credentials.store is not store:
            raise ValueError("ApprovalWorkflow and CredentialManager must share one DocumentStore")
        self.store = store
        self.clock = clock
        self.credentials = credentials or CredentialManager(store, clock=clock)
        self.audit = audit or AuditTrail(store, clock=clock)
        self.effects = dict(DEFAULT_EFFECTS if effects is None else effects)

    def create_request(self, request_type: str, job_id: str, requester_id: str, requester_role: str,
                       request_data: Any = None, metadata: Dict[str, Any] = None) -> str:
        """Create a new pending approval request and return its id."""
        if request_type not in APPROVAL_TYPES:
            raise ValidationError(f"Invalid request type: {request_type}")
        if not job_id:
            raise ValidationError("jobId is required")
        if not requester_id:
            raise ValidationError("requester id is required")
        if not can_request(requester_role, request_type):
            raise UnauthorizedError.forbidden(f"No permission to request {request_type} approvals")

        request = ApprovalRequest(
            type=request_type,
            jobId=job_id,
            requestedBy=requester_id,
            requestData=request_data,
            status=APPROVAL_PENDING,
            createdAt=self.clock(),
            metadata=metadata or {},
        )
        request_id = self.store.insert_one(APPROVAL_REQUESTS, request.to_dict())

        logger.log_approval_request(request_id, request_type, requester_id)
        return request_id

    def get_request(self, request_id: str) -> ApprovalRequest:
        """Get an approval request by ID."""
        doc = self.store.find_one(APPROVAL_REQUESTS, {"id": request_id}) if request_id else None
        if doc is None:
            raise NotFoundError("Approval request not found")
        return ApprovalRequest.from_dict(doc)

    def list_requests(self, caller_id: str, caller_role: str, status: str = None,
                      request_type: str = None) -> List[ApprovalRequest]:
        """List requests visible to the caller, newest first.

        Staff only ever see their own requests, whatever filters they pass.
        """
        if status is not None and status not in APPROVAL_STATUSES:
            raise ValidationError(f"Invalid status filter: {status}")
        if request_type is not None and request_type not in APPROVAL_TYPES:
            raise ValidationError(f"Invalid type filter: {request_type}")

        flt: Dict[str, Any] = {}
        if status:
            flt["status"] = status
        if request_type:
            flt["type"] = request_type

        if Role.parse(caller_role) == Role.STAFF:
            flt["requestedBy"] = caller_id
        elif not has_capability(caller_role, "canViewAllApprovals"):
            raise UnauthorizedError.forbidden("Insufficient permissions")

        docs = self.store.find(APPROVAL_REQUESTS, flt, sort=[("createdAt", -1)])
        return [ApprovalRequest.from_dict(doc) for doc in docs]

    def list_pending_requests(self, caller_id: str, caller_role: str) -> List[ApprovalRequest]:
        """List pending approval requests."""
        return self.list_requests(caller_id, caller_role, status=APPROVAL_PENDING)

    def resolve(self, request_id: str, resolver_id: str, resolver_role: str, decision: str,
                rejection_reason: str = None, effect: Optional[Effect] = None,
                secret: str = None, provenance: Provenance = None) -> ApprovalRequest:
        """Approve or reject a pending request.

        On approve, ``effect`` (or the default effect registered for the
        request type) runs in the same transaction as the status change.
        Approving a payment or credit payment also requires ``secret`` and
        is recorded in the usage ledger.
        """
        if decision not in DECISIONS:
            raise ValidationError("Invalid action. Must be 'approve' or 'reject'")

        request = self.get_request(request_id)
        if not can_approve(resolver_role, request.type):
            raise UnauthorizedError.forbidden(f"No permission to {decision} {request.type} requests")

        usage_action = PAYMENT_USAGE_ACTIONS.get(request.type) if decision == "approve" else None
        credential_id = None
        if usage_action is not None:
            credential_id = self.credentials.require_valid(secret, user_id=resolver_id, provenance=provenance)

        with self.store.transaction():
            request = self.get_request(request_id)
            if request.status != APPROVAL_PENDING:
                raise InvalidStateError("Request has already been processed")

            now = self.clock()
            updates = {
                "status": APPROVAL_APPROVED if decision == "approve" else APPROVAL_REJECTED,
                "resolvedBy": resolver_id,
                "resolvedAt": now,
            }
            if decision == "reject" and rejection_reason:
                updates["rejectionReason"] = rejection_reason

            matched = self.store.update_one(
                APPROVAL_REQUESTS, {"id": request_id, "status": APPROVAL_PENDING}, set=updates
            )
            if matched == 0:
                raise InvalidStateError("Request has already been processed")

            request.status = updates["status"]
            request.resolvedBy = resolver_id
            request.resolvedAt = now
            request.rejectionReason = updates.get("rejectionReason")

            effect_result = None
            if decision == "approve":
                handler = effect or self.effects.get(request.type)
                if handler is not None:
                    effect_result = handler(self.store, request, resolver_id, now)
                if credential_id is not None:
                    self.credentials.record_usage(
                        credential_id, resolver_id, usage_action,
                        target_id=request_id, target_type="approval_request",
                        metadata={"type": request.type, "jobId": request.jobId},
                        provenance=provenance,
                    )

            self.audit.log_action(
                resolver_id, resolver_role, decision, "approval_request", request_id,
                old_data={"status": APPROVAL_PENDING},
                new_data={"status": request.status},
                metadata={
                    "type": request.type,
                    "jobId": request.jobId,
                    "reason": rejection_reason,
                    "effectResult": effect_result if isinstance(effect_result, (str, int, float)) else None,
                },
                provenance=provenance,
            )

        logger.log_approval_decision(request_id, request.status, resolver_id, rejection_reason or "")
        return request

    def approve_request(self, request_id: str, approver_id: str, approver_role: str,
                        effect: Optional[Effect] = None, secret: str = None) -> ApprovalRequest:
        """Approve an approval request."""
        return self.resolve(request_id, approver_id, approver_role, "approve", effect=effect, secret=secret)

    def reject_request(self, request_id: str, approver_id: str, approver_role: str,
                       reason: str = None) -> ApprovalRequest:
        """Reject an approval request."""
        return self.resolve(request_id, approver_id, approver_role, "reject", rejection_reason=reason)

    # Role-aware entry points: approvers act directly, everyone else queues

    def add_subtask(self, job_id: str, subtask: Dict[str, Any], user_id: str, user_role: str) -> Dict[str, Any]:
        """Add a part/service subtask, queueing it for approval when needed."""
        task_type = {"parts": "part", "part": "part", "service": "service"}.get(subtask.get("taskType"))
        if task_type is None:
            raise ValidationError("taskType must be 'part' or 'service'")

        if can_approve(user_role, task_type):
            with self.store.transaction():
                subtask_id = attach_subtask(self.store, job_id, subtask, user_id, self.clock())
            return {"requiresApproval": False, "subtaskId": subtask_id}

        request_id = self.create_request(
            task_type, job_id, user_id, user_role, subtask,
            metadata={
                "partType": subtask.get("partsType"),
                "serviceName": subtask.get("serviceType"),
                "warrantyPeriod": subtask.get("warrantyPeriod"),
            },
        )
        return {"requiresApproval": True, "requestId": request_id}

    def change_job_status(self, job_id: str, new_status: str, user_id: str, user_role: str) -> Dict[str, Any]:
        """Change a job's status, queueing it for approval when needed."""
        job = self.store.find_one(JOBS, {"id": job_id}) if job_id else None
        if job is None:
            raise NotFoundError("Job not found")
        if not new_status:
            raise ValidationError("newStatus is required")

        if can_approve(user_role, "status_change"):
            now = self.clock()
            self.store.update_one(JOBS, {"id": job_id}, set={
                "status": new_status,
                "updatedAt": now,
                "lastStatusChangeBy": user_id,
                "lastStatusChangeAt": now,
            })
            return {"requiresApproval": False, "status": new_status}

        summary = {
            "currentStatus": job.get("status"),
            "newStatus": new_status,
            "vehicleNo": job.get("vehicleNo"),
        }
        request_id = self.create_request("status_change", job_id, user_id, user_role, summary, metadata=summary)
        return {"requiresApproval": True, "requestId": request_id}

    def request_credit_payment(self, bill_id: str, job_id: str, payment_data: Dict[str, Any],
                               user_id: str, user_role: str) -> str:
        """Queue a credit payment against a bill for approval."""
        bill = self.store.find_one(BILLS, {"id": bill_id}) if bill_id else None
        if bill is None:
            raise NotFoundError("Bill not found")

        outstanding = bill.get("remainingBalance")
        if outstanding is None:
            outstanding = bill.get("finalAmount")

        return self.create_request(
            "credit_payment", job_id, user_id, user_role,
            {"billId": bill_id, "paymentData": payment_data},
            metadata={
                "customerName": bill.get("customerName"),
                "creditAmount": payment_data.get("paymentAmount"),
                "paymentMethod": payment_data.get("paymentMethod"),
                "remainingBalance": outstanding,
                "billId": bill_id,
            },
        )
