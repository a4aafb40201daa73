"""
Request-scoped dependencies: the workflow services, the caller's identity and
request provenance.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Header, Request

from ..core.approval import ApprovalWorkflow
from ..core.audit import AuditTrail
from ..core.config import DB_PATH
from ..core.credentials import CredentialManager
from ..core.deletion import DeletionWorkflow
from ..core.errors import UnauthorizedError
from ..core.permissions import has_capability
from ..core.store import DocumentStore
from ..core.usage import Provenance, UsageLedger


class Services:
    """All workflows wired onto one document store."""

    def __init__(self, db_path: str = None, clock: Callable[[], datetime] = datetime.now):
        self.store = DocumentStore(db_path or DB_PATH)
        self.audit = AuditTrail(self.store, clock=clock)
        self.ledger = UsageLedger(self.store, clock=clock)
        self.credentials = CredentialManager(self.store, ledger=self.ledger, clock=clock)
        self.approvals = ApprovalWorkflow(self.store, self.credentials, audit=self.audit, clock=clock)
        self.deletions = DeletionWorkflow(self.store, self.credentials, audit=self.audit, clock=clock)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
    return _services


@dataclass
class Identity:
    user_id: str
    role: str

    def require(self, capability: str, reason: str = "Insufficient permissions"):
        if not has_capability(self.role, capability):
            raise UnauthorizedError.forbidden(reason)


def get_identity(x_user_id: Optional[str] = Header(None),
                 x_user_role: Optional[str] = Header(None)) -> Identity:
    """Identity asserted by the upstream auth proxy."""
    if not x_user_id or not x_user_role:
        raise UnauthorizedError("Authentication required", kind="unauthenticated")
    return Identity(user_id=x_user_id, role=x_user_role.strip().lower())


def get_provenance(request: Request) -> Provenance:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else request.headers.get("x-real-ip")
    if not ip_address and request.client:
        ip_address = request.client.host
    return Provenance(
        ip_address=ip_address or "unknown",
        user_agent=request.headers.get("user-agent", "unknown"),
    )
