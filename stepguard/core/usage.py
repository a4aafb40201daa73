"""
Usage ledger - append-only record of every secondary credential consumption.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from util.logging import logger
from .config import USAGE_STATS_DEFAULT_DAYS
from .errors import ValidationError
from .schema import CREDENTIAL_USAGE, CREDENTIALS, UsageRecord
from .store import DocumentStore


@dataclass
class Provenance:
    """Where a gated request came from."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class UsageLedger:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def record(self, credential_id: str, user_id: str, action: str,
               target_id: str = None, target_type: str = None,
               metadata: Dict[str, Any] = None, provenance: Provenance = None) -> str:
        """Append a usage record and bump the credential's counters."""
        if not credential_id or not user_id or not action:
            raise ValidationError("credential_id, user_id and action are required")

        now = self.clock()
        provenance = provenance or Provenance()
        record = UsageRecord(
            credentialId=credential_id,
            userId=user_id,
            action=action,
            timestamp=now,
            targetId=target_id,
            targetType=target_type,
            metadata=metadata,
            ipAddress=provenance.ip_address,
            userAgent=provenance.user_agent,
        )

        with self.store.transaction():
            if self.store.count(CREDENTIALS, {"id": credential_id}) == 0:
                raise ValidationError(f"Unknown credential: {credential_id}")
            usage_id = self.store.insert_one(CREDENTIAL_USAGE, record.to_dict())
            self.store.update_one(
                CREDENTIALS, {"id": credential_id},
                set={"lastUsedAt": now},
                inc={"usageCount": 1},
            )

        logger.log_credential_usage(credential_id, user_id, action, target_id)
        return usage_id

    def list_usage(self, user_id: str = None, action: str = None, since: datetime = None,
                   limit: int = None) -> List[UsageRecord]:
        """Usage records, newest first."""
        flt: Dict[str, Any] = {}
        if user_id:
            flt["userId"] = user_id
        if action:
            flt["action"] = action
        if since:
            flt["timestamp"] = {"$gte": since}

        docs = self.store.find(CREDENTIAL_USAGE, flt, sort=[("timestamp", -1)], limit=limit)
        return [UsageRecord.from_dict(doc) for doc in docs]

    def stats(self, window_days: int = USAGE_STATS_DEFAULT_DAYS) -> Dict[str, Any]:
        """Aggregate usage over the trailing window."""
        if window_days is None or window_days < 1:
            raise ValidationError("window_days must be >= 1")

        since = self.clock() - timedelta(days=window_days)
        records = self.list_usage(since=since)

        per_action = Counter(r.action for r in records)
        per_user = Counter(r.userId for r in records)
        per_day = Counter(r.timestamp.date().isoformat() for r in records)

        return {
            "totalUsage": len(records),
            "actionBreakdown": [
                {"action": action, "count": count} for action, count in per_action.most_common()
            ],
            "userBreakdown": [
                {"userId": user, "count": count} for user, count in per_user.most_common()
            ],
            "dailyUsage": [
                {"date": day, "count": per_day[day]} for day in sorted(per_day)
            ],
        }
