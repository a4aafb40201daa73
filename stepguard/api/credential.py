"""
Secondary credential endpoints: view, rotate, validate and usage stats.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ..core.config import USAGE_STATS_DEFAULT_DAYS
from ..core.usage import Provenance
from .deps import Identity, Services, get_identity, get_provenance, get_services
from .schemas import (
    CredentialResponse,
    CredentialValidateRequest,
    CredentialValidateResponse,
    UsageStatsResponse,
)

router = APIRouter()


@router.get("/current", response_model=CredentialResponse)
def get_current_credential(identity: Identity = Depends(get_identity),
                           services: Services = Depends(get_services)):
    """This week's credential, issuing it on first use."""
    identity.require("canViewCredential", "Only administrators can view the secondary credential")
    current = services.credentials.current()
    return CredentialResponse(credential=current["plaintext"], expiresAt=current["expiresAt"])


@router.post("/rotate", response_model=CredentialResponse)
def rotate_credential(identity: Identity = Depends(get_identity),
                      services: Services = Depends(get_services),
                      provenance: Provenance = Depends(get_provenance)):
    """Invalidate the active credential and issue a new one."""
    identity.require("canRotateCredential", "Only administrators can rotate the secondary credential")
    rotated = services.credentials.force_rotate()
    services.audit.log_action(
        identity.user_id, identity.role, "rotate", "credential", "active",
        metadata={"expiresAt": rotated["expiresAt"].isoformat()},
        provenance=provenance,
    )
    return CredentialResponse(credential=rotated["plaintext"], expiresAt=rotated["expiresAt"])


@router.post("/validate", response_model=CredentialValidateResponse)
def validate_credential(req: CredentialValidateRequest,
                        identity: Identity = Depends(get_identity),
                        services: Services = Depends(get_services),
                        provenance: Provenance = Depends(get_provenance)):
    result = services.credentials.validate(req.credential, user_id=identity.user_id, provenance=provenance)
    if not result.valid:
        if result.throttled:
            status_code, kind = 429, "too_many_attempts"
        elif result.format_error:
            status_code, kind = 400, "invalid_credential_format"
        else:
            status_code, kind = 401, "invalid_credential"
        return JSONResponse(
            status_code=status_code,
            content={"valid": False, "kind": kind, "error": result.error},
        )

    usage_id = None
    if req.action:
        usage_id = services.credentials.record_usage(
            result.credential_id, identity.user_id, req.action,
            target_id=req.targetId, target_type=req.targetType,
            metadata=req.metadata, provenance=provenance,
        )
    return CredentialValidateResponse(valid=True, usageId=usage_id)


@router.get("/stats", response_model=UsageStatsResponse)
def get_usage_stats(days: int = Query(USAGE_STATS_DEFAULT_DAYS, ge=1, le=366,
                                      description="Trailing window in days"),
                    identity: Identity = Depends(get_identity),
                    services: Services = Depends(get_services)):
    identity.require("canViewCredential", "Only administrators can view credential usage")
    return UsageStatsResponse(**services.credentials.stats(days))
