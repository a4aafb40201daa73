"""
Request/response models for the HTTP surface.
"""

from pydantic import BaseModel, field_validator, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.schema import APPROVAL_TYPES


def _not_blank(v: str, name: str) -> str:
    if not v or not v.strip():
        raise ValueError(f'{name} cannot be empty')
    return v


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool


class ErrorResponse(BaseModel):
    error: str
    message: str


# Secondary credential

class CredentialResponse(BaseModel):
    credential: str
    expiresAt: datetime


class CredentialValidateRequest(BaseModel):
    credential: Any = None
    # When set, a successful validation is also written to the usage ledger
    action: Optional[str] = None
    targetId: Optional[str] = None
    targetType: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('action')
    @classmethod
    def action_must_not_be_blank(cls, v):
        if v is not None:
            _not_blank(v, 'action')
        return v


class CredentialValidateResponse(BaseModel):
    valid: bool
    kind: Optional[str] = None
    error: Optional[str] = None
    usageId: Optional[str] = None


class ActionCount(BaseModel):
    action: str
    count: int


class UserCount(BaseModel):
    userId: str
    count: int


class DailyCount(BaseModel):
    date: str
    count: int


class UsageStatsResponse(BaseModel):
    totalUsage: int
    actionBreakdown: List[ActionCount]
    userBreakdown: List[UserCount]
    dailyUsage: List[DailyCount]


# Approval requests

class ApprovalCreateRequest(BaseModel):
    type: str
    jobId: str
    requestData: Any = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('type')
    @classmethod
    def type_must_be_valid(cls, v):
        if v not in APPROVAL_TYPES:
            raise ValueError(f'type must be one of: {list(APPROVAL_TYPES)}')
        return v

    @field_validator('jobId')
    @classmethod
    def job_id_must_not_be_empty(cls, v):
        return _not_blank(v, 'jobId')


class ApprovalCreateResponse(BaseModel):
    success: bool
    requestId: str
    message: str


class ApprovalRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    jobId: str
    requestedBy: str
    requestData: Any = None
    status: str
    createdAt: datetime
    metadata: Dict[str, Any] = {}
    resolvedBy: Optional[str] = None
    resolvedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None


class ApprovalListResponse(BaseModel):
    requests: List[ApprovalRequestOut]


class ApprovalResolveRequest(BaseModel):
    action: str
    rejectionReason: Optional[str] = None
    credential: Any = None

    @field_validator('action')
    @classmethod
    def action_must_be_valid(cls, v):
        if v not in ('approve', 'reject'):
            raise ValueError("action must be 'approve' or 'reject'")
        return v


# Deletions

class DeletionCreateRequest(BaseModel):
    # itemType is checked by the workflow so an unknown type reports the supported list
    itemType: str
    itemId: str
    reason: Optional[str] = None
    credential: Any = None


class DeletionResolveRequest(BaseModel):
    action: str
    reason: Optional[str] = None
    credential: Any = None


class RestoreRequest(BaseModel):
    reason: Optional[str] = None
    credential: Any = None


class DeletionResultResponse(BaseModel):
    success: bool
    status: str
    id: str
    message: str


class DeletionRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    originalId: str
    itemType: str
    originalData: Dict[str, Any]
    deletedBy: str
    deletedAt: datetime
    reason: str
    status: str
    restorable: bool = True
    approvedBy: Optional[str] = None
    approvedAt: Optional[datetime] = None
    rejectedBy: Optional[str] = None
    rejectedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None
    restoredBy: Optional[str] = None
    restoredAt: Optional[datetime] = None


class DeletionListResponse(BaseModel):
    deletedItems: List[DeletionRecordOut]
    pendingRequests: List[DeletionRecordOut]


# Audit log

class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    userId: str
    userRole: str
    action: str
    resource: str
    resourceId: str
    timestamp: datetime
    success: bool
    oldData: Any = None
    newData: Any = None
    metadata: Optional[Dict[str, Any]] = None
    errorMessage: Optional[str] = None
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class AuditPageResponse(BaseModel):
    entries: List[AuditEntryOut]
    pagination: Pagination
