"""
Approval request endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..core.usage import Provenance
from .deps import Identity, Services, get_identity, get_provenance, get_services
from .schemas import (
    ApprovalCreateRequest,
    ApprovalCreateResponse,
    ApprovalListResponse,
    ApprovalRequestOut,
    ApprovalResolveRequest,
)

router = APIRouter()


@router.post("", response_model=ApprovalCreateResponse)
def create_approval_request(req: ApprovalCreateRequest,
                            identity: Identity = Depends(get_identity),
                            services: Services = Depends(get_services)):
    request_id = services.approvals.create_request(
        req.type, req.jobId, identity.user_id, identity.role,
        request_data=req.requestData, metadata=req.metadata,
    )
    return ApprovalCreateResponse(
        success=True,
        requestId=request_id,
        message="Approval request created successfully",
    )


@router.get("", response_model=ApprovalListResponse)
def list_approval_requests(status: Optional[str] = Query(None, description="pending, approved or rejected"),
                           type: Optional[str] = Query(None, description="Approval request type"),
                           identity: Identity = Depends(get_identity),
                           services: Services = Depends(get_services)):
    """Staff callers only ever see their own requests."""
    requests = services.approvals.list_requests(identity.user_id, identity.role, status=status, request_type=type)
    return ApprovalListResponse(requests=[ApprovalRequestOut.model_validate(r) for r in requests])


@router.post("/{request_id}/resolve", response_model=ApprovalRequestOut)
def resolve_approval_request(request_id: str, req: ApprovalResolveRequest,
                             identity: Identity = Depends(get_identity),
                             services: Services = Depends(get_services),
                             provenance: Provenance = Depends(get_provenance)):
    resolved = services.approvals.resolve(
        request_id, identity.user_id, identity.role, req.action,
        rejection_reason=req.rejectionReason, secret=req.credential, provenance=provenance,
    )
    return ApprovalRequestOut.model_validate(resolved)
