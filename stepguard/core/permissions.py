"""
Role permission matrix.

A pure, total lookup: every (role, capability) pair resolves to a bool and
unknown roles or capabilities resolve to False. No I/O.
"""

from enum import Enum
from typing import Dict, Optional, Union


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    TAX = "tax"

    @classmethod
    def parse(cls, value: Union[str, "Role", None]) -> Optional["Role"]:
        """Return the Role for ``value`` or None when it is not a known role."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Approval request type -> (request capability, approve capability)
APPROVAL_CAPABILITIES = {
    "part": ("canRequestParts", "canApproveParts"),
    "service": ("canRequestServices", "canApproveServices"),
    "payment": ("canRequestPayments", "canApprovePayments"),
    "status_change": ("canRequestStatusChanges", "canApproveStatusChanges"),
    "credit_payment": ("canRequestCreditPayments", "canApproveCreditPayments"),
}

CAPABILITIES = (
    # Approval requests
    "canRequestParts",
    "canRequestServices",
    "canRequestPayments",
    "canRequestStatusChanges",
    "canRequestCreditPayments",
    "canApproveParts",
    "canApproveServices",
    "canApprovePayments",
    "canApproveStatusChanges",
    "canApproveCreditPayments",
    "canViewAllApprovals",
    # General user permissions
    "canCreateJobs",
    "canDeleteJobs",
    "canAddServices",
    "canAddParts",
    "canAccessHistory",
    "canManageUsers",
    "canAccessTaxAccount",
    "canPermanentDelete",
    "canViewAllReports",
    "canManageWarranty",
    # Deletion, credential and audit administration
    "canViewDeletionRecords",
    "canResolveDeletions",
    "canRestoreDeletions",
    "canViewCredential",
    "canRotateCredential",
    "canViewAuditLog",
)

_GRANTS = {
    Role.ADMIN: frozenset(CAPABILITIES),
    Role.MANAGER: frozenset({
        "canRequestParts",
        "canRequestServices",
        "canRequestPayments",
        "canRequestStatusChanges",
        "canRequestCreditPayments",
        "canApproveParts",
        "canApproveServices",
        "canApproveStatusChanges",  # payments and credit payments are admin-only
        "canViewAllApprovals",
        "canCreateJobs",
        "canDeleteJobs",  # queued for admin approval
        "canAddServices",
        "canAddParts",
        "canViewAllReports",
        "canManageWarranty",
    }),
    Role.STAFF: frozenset({
        "canRequestParts",
        "canRequestServices",
        "canRequestPayments",
        "canRequestStatusChanges",
        "canRequestCreditPayments",
        "canCreateJobs",
    }),
    Role.TAX: frozenset({
        "canViewAllApprovals",
        "canAccessHistory",
        "canAccessTaxAccount",
        "canViewAllReports",
    }),
}


def has_capability(role: Union[str, Role, None], capability: str) -> bool:
    """Return whether ``role`` holds ``capability``. Never raises."""
    parsed = Role.parse(role)
    if parsed is None or not isinstance(capability, str):
        return False
    return capability in _GRANTS.get(parsed, frozenset())


def permissions_for(role: Union[str, Role, None]) -> Dict[str, bool]:
    """Full capability map for a role."""
    return {capability: has_capability(role, capability) for capability in CAPABILITIES}


def request_capability(request_type: str) -> Optional[str]:
    pair = APPROVAL_CAPABILITIES.get(request_type)
    return pair[0] if pair else None


def approve_capability(request_type: str) -> Optional[str]:
    pair = APPROVAL_CAPABILITIES.get(request_type)
    return pair[1] if pair else None


def can_request(role: Union[str, Role, None], request_type: str) -> bool:
    capability = request_capability(request_type)
    return capability is not None and has_capability(role, capability)


def can_approve(role: Union[str, Role, None], request_type: str) -> bool:
    capability = approve_capability(request_type)
    return capability is not None and has_capability(role, capability)
