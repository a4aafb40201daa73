"""
HTTP surface for the step-up credential, approval and deletion workflows.

Identity is asserted upstream through the X-User-Id / X-User-Role headers.
"""

from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Depends, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from util.logging import logger
from ..core.config import VERSION, debug_enabled
from ..core.errors import StepGuardError
from .approvals import router as approvals_router
from .credential import router as credential_router
from .deletions import router as deletions_router
from .deps import Identity, Services, get_identity, get_services
from .schemas import AuditEntryOut, AuditPageResponse, HealthResponse

app = FastAPI(
    title="StepGuard API",
    version=VERSION,
    description="Role-gated approvals and soft deletes behind a weekly step-up credential",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(credential_router, prefix="/credential", tags=["credential"])
app.include_router(approvals_router, prefix="/approvals", tags=["approvals"])
app.include_router(deletions_router, prefix="/deletions", tags=["deletions"])


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(services: Services = Depends(get_services)):
    """Check system health."""
    db_health = services.store.health_check()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
    )


@app.get("/audit", response_model=AuditPageResponse)
def list_audit_entries(page: int = Query(1, ge=1),
                       limit: int = Query(50, ge=1),
                       action: Optional[str] = Query(None, description="Substring match on the action"),
                       resource: Optional[str] = Query(None),
                       user_id: Optional[str] = Query(None),
                       date_from: Optional[datetime] = Query(None),
                       date_to: Optional[datetime] = Query(None),
                       identity: Identity = Depends(get_identity),
                       services: Services = Depends(get_services)):
    """Paged audit log, newest first."""
    identity.require("canViewAuditLog", "Only administrators can view the audit log")
    result = services.audit.query(
        page=page, limit=limit, action=action, resource=resource,
        user_id=user_id, date_from=date_from, date_to=date_to,
    )
    return AuditPageResponse(
        entries=[AuditEntryOut.model_validate(e) for e in result["entries"]],
        pagination=result["pagination"],
    )


@app.exception_handler(StepGuardError)
async def stepguard_error_handler(request, exc: StepGuardError):
    """Render workflow errors as {"error": kind, "message": reason}."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.reason}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.kind}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    # Field locations and messages only; input values may carry the credential
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": "validation_error", "message": problems})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"error": "internal_error", "message": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)
