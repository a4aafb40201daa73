"""
Weekly secondary credential (step-up PIN).

One credential is active at a time. It is scoped to an ISO week (Monday is day
one) and expires at Sunday 23:59:59.999 of that week. Issuing runs inside a
single-writer store transaction, and the store carries a unique index over
active credentials, so concurrent callers converge on one active row.
"""

import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from dateutil.relativedelta import relativedelta, SU

from util.logging import logger
from .config import (
    CREDENTIAL_ATTEMPT_WINDOW_MINUTES,
    CREDENTIAL_LENGTH,
    CREDENTIAL_MAX_FAILED_ATTEMPTS,
    USAGE_STATS_DEFAULT_DAYS,
)
from .errors import ConflictError, UnauthorizedError, ValidationError
from .schema import CREDENTIAL_ATTEMPTS, CREDENTIALS, Credential
from .store import DocumentStore
from .usage import Provenance, UsageLedger

INVALID_CREDENTIAL_REASON = "Invalid or expired credential"
THROTTLED_REASON = "Too many failed attempts. Try again later."


def week_id(moment: datetime) -> str:
    """ISO week key, e.g. 2025-W27. Uses the ISO year at year boundaries."""
    iso_year, iso_week, _ = moment.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def week_end(moment: datetime) -> datetime:
    """Last millisecond of the Sunday closing ``moment``'s week."""
    sunday = moment + relativedelta(weekday=SU(+1))
    return sunday.replace(hour=23, minute=59, second=59, microsecond=999000)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


@dataclass
class ValidationResult:
    valid: bool
    credential_id: Optional[str] = None
    error: Optional[str] = None
    format_error: bool = False
    throttled: bool = False


class CredentialManager:
    """Issues, validates and rotates the weekly secondary credential."""

    def __init__(self, store: DocumentStore, ledger: UsageLedger = None,
                 clock: Callable[[], datetime] = datetime.now,
                 length: int = CREDENTIAL_LENGTH,
                 max_failed_attempts: int = CREDENTIAL_MAX_FAILED_ATTEMPTS,
                 attempt_window: timedelta = timedelta(minutes=CREDENTIAL_ATTEMPT_WINDOW_MINUTES)):
        if length < 1:
            raise ValueError("Credential length must be positive")
        self.store = store
        self.clock = clock
        self.length = length
        self.max_failed_attempts = max_failed_attempts
        self.attempt_window = attempt_window
        self.ledger = ledger or UsageLedger(store, clock=clock)
        self._format = re.compile(rf"[0-9]{{{length}}}")
        self.store.create_unique_index(CREDENTIALS, ["isActive"], partial_filter={"isActive": True})

    # Issuing

    def ensure_active(self) -> str:
        """Return this week's active credential, creating it when missing."""
        return self._ensure().secretPlaintext

    def generate(self, force: bool = False) -> str:
        """Issue a new credential.

        Without ``force`` an existing active credential for the week is
        returned unchanged.
        """
        return self._issue_with_retry(force).secretPlaintext

    def current(self) -> Dict[str, Any]:
        credential = self._ensure()
        return {"plaintext": credential.secretPlaintext, "expiresAt": credential.expiresAt}

    def force_rotate(self) -> Dict[str, Any]:
        credential = self._issue_with_retry(force=True)
        return {"plaintext": credential.secretPlaintext, "expiresAt": credential.expiresAt}

    def _ensure(self) -> Credential:
        return self._issue_with_retry(force=False)

    def _issue_with_retry(self, force: bool) -> Credential:
        try:
            return self._issue_once(force)
        except ConflictError:
            # Another writer activated a credential first; read the winner
            logger.log_credential_event("activation_conflict", status="retrying")
            return self._issue_once(force=False)

    def _issue_once(self, force: bool) -> Credential:
        with self.store.transaction():
            now = self.clock()
            if not force:
                existing = self._active_for_week(now)
                if existing is not None:
                    return existing
            return self._issue(now)

    def _active_for_week(self, now: datetime) -> Optional[Credential]:
        doc = self.store.find_one(CREDENTIALS, {
            "weekId": week_id(now),
            "isActive": True,
            "expiresAt": {"$gt": now},
        })
        return Credential.from_dict(doc) if doc else None

    def _new_secret(self, avoid: set) -> str:
        while True:
            secret = f"{secrets.randbelow(10 ** self.length):0{self.length}d}"
            if hash_secret(secret) not in avoid:
                return secret

    def _issue(self, now: datetime) -> Credential:
        """Deactivate every active credential and activate a fresh one.

        Caller must hold the store transaction.
        """
        previous = self.store.find(CREDENTIALS, {"isActive": True})
        secret = self._new_secret({doc["secretHash"] for doc in previous})

        self.store.update_many(
            CREDENTIALS, {"isActive": True},
            set={"isActive": False, "deactivatedAt": now},
        )

        credential = Credential(
            id=secrets.token_hex(12),
            weekId=week_id(now),
            date=now.date().isoformat(),
            secretPlaintext=secret,
            secretHash=hash_secret(secret),
            createdAt=now,
            expiresAt=week_end(now),
        )
        self.store.insert_one(CREDENTIALS, credential.to_dict())

        logger.log_credential_event(
            "issued", credential.id, credential.weekId,
            details={"superseded": len(previous), "expires_at": credential.expiresAt.isoformat()}
        )
        return credential

    # Validation

    def validate(self, secret: Any, user_id: str = None, provenance: Provenance = None) -> ValidationResult:
        """Check ``secret`` against the active, unexpired credential.

        When the caller is identified, wrong codes are counted per user and
        per IP address, and further attempts are refused once either count
        reaches the limit inside the window.
        """
        self.ensure_active()

        now = self.clock()
        ip_address = provenance.ip_address if provenance else None
        if self._throttled(user_id, ip_address, now):
            logger.log_credential_event("validation", status="throttled", details={"user_id": user_id})
            return ValidationResult(valid=False, error=THROTTLED_REASON, throttled=True)

        if not isinstance(secret, str) or not self._format.fullmatch(secret):
            logger.log_credential_event("validation", status="rejected", details={"reason": "format"})
            return ValidationResult(
                valid=False,
                error=f"Credential must be exactly {self.length} digits",
                format_error=True,
            )

        doc = self.store.find_one(CREDENTIALS, {
            "secretHash": hash_secret(secret),
            "isActive": True,
            "expiresAt": {"$gt": now},
        })
        if doc is None:
            self._record_failure(user_id, ip_address, now)
            logger.log_credential_event("validation", status="rejected")
            return ValidationResult(valid=False, error=INVALID_CREDENTIAL_REASON)

        logger.log_credential_event("validation", doc["id"], doc["weekId"], status="accepted")
        return ValidationResult(valid=True, credential_id=doc["id"])

    def require_valid(self, secret: Any, user_id: str = None, provenance: Provenance = None) -> str:
        """Validate or raise. Returns the credential id."""
        result = self.validate(secret, user_id=user_id, provenance=provenance)
        if result.valid:
            return result.credential_id
        if result.throttled:
            raise UnauthorizedError(result.error, kind="too_many_attempts", status_code=429)
        if result.format_error:
            raise ValidationError(result.error, kind="invalid_credential_format")
        raise UnauthorizedError(result.error, kind="invalid_credential")

    def _throttled(self, user_id: Optional[str], ip_address: Optional[str], now: datetime) -> bool:
        since = now - self.attempt_window
        for field_name, value in (("userId", user_id), ("ipAddress", ip_address)):
            if value is None:
                continue
            failures = self.store.count(CREDENTIAL_ATTEMPTS, {field_name: value, "timestamp": {"$gt": since}})
            if failures >= self.max_failed_attempts:
                return True
        return False

    def _record_failure(self, user_id: Optional[str], ip_address: Optional[str], now: datetime):
        if user_id is None and ip_address is None:
            return
        self.store.insert_one(CREDENTIAL_ATTEMPTS, {
            "userId": user_id,
            "ipAddress": ip_address,
            "timestamp": now,
        })

    # Usage

    def record_usage(self, credential_id: str, user_id: str, action: str,
                     target_id: str = None, target_type: str = None,
                     metadata: Dict[str, Any] = None, provenance: Provenance = None) -> str:
        return self.ledger.record(
            credential_id, user_id, action,
            target_id=target_id, target_type=target_type,
            metadata=metadata, provenance=provenance,
        )

    def stats(self, window_days: int = USAGE_STATS_DEFAULT_DAYS) -> Dict[str, Any]:
        return self.ledger.stats(window_days)
