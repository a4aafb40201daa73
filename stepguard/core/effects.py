"""
Side effects applied when an approval request is approved.

Each effect runs inside the approval's store transaction; raising aborts the
transition and leaves the request pending.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict

from util.logging import logger
from .errors import NotFoundError, ValidationError
from .schema import ApprovalRequest
from .store import DocumentStore

JOBS = "jobs"
BILLS = "bills"
CREDIT_PAYMENTS = "creditPayments"

Effect = Callable[[DocumentStore, ApprovalRequest, str, datetime], Any]


def _load(store: DocumentStore, collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    if not doc_id:
        raise ValidationError(f"{label} id is required")
    doc = store.find_one(collection, {"id": doc_id})
    if doc is None:
        raise NotFoundError(f"{label} not found")
    return doc


def attach_subtask(store: DocumentStore, job_id: str, subtask: Dict[str, Any],
                   approved_by: str, now: datetime) -> str:
    """Append an approved part/service subtask to a job."""
    job = _load(store, JOBS, job_id, "Job")

    entry = dict(subtask)
    entry.setdefault("subtaskID", uuid.uuid4().hex)
    entry.setdefault("isCompleted", False)
    entry.update({
        "approvalStatus": "approved",
        "approvedBy": approved_by,
        "approvedAt": now,
    })

    subtasks = list(job.get("subTasks") or [])
    subtasks.append(entry)
    store.update_one(JOBS, {"id": job_id}, set={"subTasks": subtasks, "updatedAt": now})
    return entry["subtaskID"]


def apply_payment(store: DocumentStore, request: ApprovalRequest, resolver_id: str, now: datetime) -> str:
    """Record the payment and reduce the bill's remaining balance."""
    data = request.requestData or {}
    payment = data.get("paymentData") or {}
    amount = payment.get("paymentAmount")
    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("paymentAmount must be a positive number")

    bill_id = data.get("billId")
    bill = _load(store, BILLS, bill_id, "Bill")

    payment_id = store.insert_one(CREDIT_PAYMENTS, {
        **payment,
        "billId": bill_id,
        "jobId": request.jobId,
        "createdAt": now,
        "processedBy": resolver_id,
        "validationStatus": "verified",
    })

    outstanding = bill.get("remainingBalance")
    if outstanding is None:
        outstanding = bill.get("finalAmount", 0)
    new_balance = outstanding - amount

    store.update_one(BILLS, {"id": bill_id}, set={
        "remainingBalance": max(0, new_balance),
        "status": "paid" if new_balance <= 0 else "partially_paid",
        "lastPaymentDate": now,
        "updatedAt": now,
    })
    logger.info(f"Applied payment {payment_id} of {amount} to bill {bill_id}")
    return payment_id


def apply_subtask(store: DocumentStore, request: ApprovalRequest, resolver_id: str, now: datetime) -> str:
    return attach_subtask(store, request.jobId, request.requestData or {}, resolver_id, now)


def apply_status_change(store: DocumentStore, request: ApprovalRequest, resolver_id: str, now: datetime) -> str:
    new_status = (request.requestData or {}).get("newStatus")
    if not new_status:
        raise ValidationError("newStatus is required")

    _load(store, JOBS, request.jobId, "Job")
    store.update_one(JOBS, {"id": request.jobId}, set={
        "status": new_status,
        "updatedAt": now,
        "lastStatusChangeBy": resolver_id,
        "lastStatusChangeAt": now,
    })
    return new_status


DEFAULT_EFFECTS: Dict[str, Effect] = {
    "part": apply_subtask,
    "service": apply_subtask,
    "payment": apply_payment,
    "credit_payment": apply_payment,
    "status_change": apply_status_change,
}
