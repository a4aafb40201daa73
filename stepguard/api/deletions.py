"""
Soft-delete endpoints: request, resolve, restore, list and look up.
"""

from fastapi import APIRouter, Depends, Query

from ..core.usage import Provenance
from .deps import Identity, Services, get_identity, get_provenance, get_services
from .schemas import (
    DeletionCreateRequest,
    DeletionListResponse,
    DeletionRecordOut,
    DeletionResolveRequest,
    DeletionResultResponse,
    RestoreRequest,
)

router = APIRouter()

_MESSAGES = {
    "deleted": "Item deleted successfully",
    "pending_approval": "Deletion request submitted for admin approval",
    "rejected": "Deletion request rejected",
    "restored": "Item restored successfully",
}


def _result(outcome) -> DeletionResultResponse:
    return DeletionResultResponse(
        success=True,
        status=outcome["status"],
        id=outcome["id"],
        message=_MESSAGES[outcome["status"]],
    )


@router.post("", response_model=DeletionResultResponse)
def request_deletion(req: DeletionCreateRequest,
                     identity: Identity = Depends(get_identity),
                     services: Services = Depends(get_services),
                     provenance: Provenance = Depends(get_provenance)):
    """Admins delete immediately; managers queue a request."""
    outcome = services.deletions.request_delete(
        req.itemType, req.itemId, req.reason,
        identity.user_id, identity.role, req.credential, provenance=provenance,
    )
    return _result(outcome)


@router.post("/{request_id}/resolve", response_model=DeletionResultResponse)
def resolve_deletion(request_id: str, req: DeletionResolveRequest,
                     identity: Identity = Depends(get_identity),
                     services: Services = Depends(get_services),
                     provenance: Provenance = Depends(get_provenance)):
    outcome = services.deletions.resolve(
        request_id, identity.user_id, identity.role, req.action,
        reason=req.reason, secret=req.credential, provenance=provenance,
    )
    return _result(outcome)


@router.post("/log/{log_id}/restore", response_model=DeletionResultResponse)
def restore_deleted(log_id: str, req: RestoreRequest,
                    identity: Identity = Depends(get_identity),
                    services: Services = Depends(get_services),
                    provenance: Provenance = Depends(get_provenance)):
    outcome = services.deletions.restore(
        log_id, identity.user_id, identity.role,
        reason=req.reason, secret=req.credential, provenance=provenance,
    )
    return _result(outcome)


@router.get("", response_model=DeletionListResponse)
def list_deletion_records(kind: str = Query("all", description="deleted, pending or all"),
                          identity: Identity = Depends(get_identity),
                          services: Services = Depends(get_services)):
    records = services.deletions.list_records(identity.role, kind=kind)
    return DeletionListResponse(
        deletedItems=[DeletionRecordOut.model_validate(r) for r in records["deletedItems"]],
        pendingRequests=[DeletionRecordOut.model_validate(r) for r in records["pendingRequests"]],
    )


@router.get("/{record_id}", response_model=DeletionRecordOut)
def get_deletion_record(record_id: str,
                        identity: Identity = Depends(get_identity),
                        services: Services = Depends(get_services)):
    """A deletion log entry or a queued request."""
    return DeletionRecordOut.model_validate(services.deletions.get_record(record_id, identity.role))
