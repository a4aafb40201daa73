"""
Record types persisted in the document store.
"""

from dataclasses import dataclass, asdict, field, fields
from datetime import datetime
from typing import Any, Dict, Optional

# Collections
CREDENTIALS = "credentials"
CREDENTIAL_USAGE = "credentialUsage"
CREDENTIAL_ATTEMPTS = "credentialAttempts"
APPROVAL_REQUESTS = "approvalRequests"
DELETION_REQUESTS = "deletionRequests"
DELETION_LOG = "deletionLog"
AUDIT_LOG = "auditLog"

# Approval requests
APPROVAL_TYPES = ("part", "service", "payment", "status_change", "credit_payment")
APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_STATUSES = (APPROVAL_PENDING, APPROVAL_APPROVED, APPROVAL_REJECTED)

# Deletion records
DELETION_PENDING = "pending_approval"
DELETION_REJECTED = "rejected"
DELETION_DELETED = "deleted"
DELETION_RESTORED = "restored"

# Deletable item type -> target collection
ITEM_COLLECTIONS = {
    "job": "jobs",
    "bill": "bills",
    "payment": "creditPayments",
}

TOMBSTONE_FIELDS = ("deleted", "deletedAt", "deletedBy", "deletionReason")


class UsageAction:
    """Symbolic actions recorded when the secondary credential is consumed."""
    DELETE_JOB = "delete_job"
    DELETE_BILL = "delete_bill"
    DELETE_PAYMENT = "delete_payment"
    APPROVE_PAYMENT = "approve_payment"
    COMPLETE_PAYMENT = "complete_payment"
    FINALIZE_BILL = "finalize_bill"
    RESTORE_ITEM = "restore_item"
    MODIFY_BANK_ACCOUNT = "modify_bank_account"
    OVERRIDE_APPROVAL = "override_approval"
    MODIFY_USER_ROLE = "modify_user_role"
    APPROVE_DELETION = "approve_deletion"
    REJECT_DELETION = "reject_deletion"

    DELETE_BY_ITEM_TYPE = {
        "job": DELETE_JOB,
        "bill": DELETE_BILL,
        "payment": DELETE_PAYMENT,
    }


def _dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Credential:
    id: str
    weekId: str
    date: str
    secretPlaintext: str
    secretHash: str
    createdAt: datetime
    expiresAt: datetime
    isActive: bool = True
    usageCount: int = 0
    lastUsedAt: Optional[datetime] = None
    deactivatedAt: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credential':
        data = _known(cls, data)
        for key in ('createdAt', 'expiresAt', 'lastUsedAt', 'deactivatedAt'):
            data[key] = _dt(data.get(key))
        return cls(**data)


@dataclass
class UsageRecord:
    credentialId: str
    userId: str
    action: str
    timestamp: datetime
    targetId: Optional[str] = None
    targetType: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['id'] is None:
            del data['id']
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UsageRecord':
        data = _known(cls, data)
        data['timestamp'] = _dt(data['timestamp'])
        return cls(**data)


@dataclass
class ApprovalRequest:
    type: str  # part, service, payment, status_change, credit_payment
    jobId: str
    requestedBy: str
    requestData: Any
    status: str  # pending, approved, rejected
    createdAt: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    resolvedBy: Optional[str] = None
    resolvedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        data = asdict(self)
        if data['id'] is None:
            del data['id']
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRequest':
        """Create from dictionary (for loading from storage)."""
        data = _known(cls, data)
        data['createdAt'] = _dt(data['createdAt'])
        data['resolvedAt'] = _dt(data.get('resolvedAt'))
        if data.get('metadata') is None:
            data['metadata'] = {}
        return cls(**data)

    @property
    def is_terminal(self) -> bool:
        return self.status in (APPROVAL_APPROVED, APPROVAL_REJECTED)


@dataclass
class DeletionRecord:
    """One logical deletion record.

    ``pending_approval``/``rejected`` records live in deletionRequests,
    ``deleted``/``restored`` records in deletionLog.
    """
    originalId: str
    itemType: str
    originalData: Dict[str, Any]
    deletedBy: str
    deletedAt: datetime
    reason: str
    status: str
    restorable: bool = True
    requestId: Optional[str] = None
    approvedBy: Optional[str] = None
    approvedAt: Optional[datetime] = None
    approvalReason: Optional[str] = None
    rejectedBy: Optional[str] = None
    rejectedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None
    restoredBy: Optional[str] = None
    restoredAt: Optional[datetime] = None
    restorationReason: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Unset optional fields stay out of the stored document
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeletionRecord':
        data = _known(cls, data)
        for key in ('deletedAt', 'approvedAt', 'rejectedAt', 'restoredAt'):
            data[key] = _dt(data.get(key))
        return cls(**data)


@dataclass
class AuditEntry:
    userId: str
    userRole: str
    action: str
    resource: str
    resourceId: str
    timestamp: datetime
    success: bool = True
    oldData: Optional[Any] = None
    newData: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None
    errorMessage: Optional[str] = None
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['id'] is None:
            del data['id']
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        data = _known(cls, data)
        data['timestamp'] = _dt(data['timestamp'])
        return cls(**data)
