"""
Deletion workflow tests - direct and queued soft deletes, resolution, restore.
"""

import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from stepguard.core.credentials import CredentialManager
from stepguard.core.deletion import DeletionWorkflow
from stepguard.core.errors import InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from stepguard.core.schema import (
    AUDIT_LOG,
    CREDENTIAL_USAGE,
    DELETION_LOG,
    DELETION_REQUESTS,
    TOMBSTONE_FIELDS,
)
from stepguard.core.store import DocumentStore
from stepguard.core.usage import Provenance


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2025, 7, 7, 9, 0))


@pytest.fixture
def store():
    """Temporary store seeded with a job, a bill and a payment."""
    test_dir = tempfile.mkdtemp()
    store = DocumentStore(os.path.join(test_dir, "deletion.db"))
    store.insert_one("jobs", {"id": "42", "vehicleNo": "KA-01-1234", "status": "completed"})
    store.insert_one("bills", {"id": "123", "jobId": "42", "finalAmount": 900})
    store.insert_one("creditPayments", {"id": "p-1", "billId": "123", "paymentAmount": 300})
    yield store
    shutil.rmtree(test_dir, ignore_errors=True)


@pytest.fixture
def credentials(store, clock):
    return CredentialManager(store, clock=clock)


@pytest.fixture
def secret(credentials):
    return credentials.ensure_active()


@pytest.fixture
def workflow(store, credentials, clock):
    return DeletionWorkflow(store, credentials, clock=clock)


def usage_actions(store):
    return [doc["action"] for doc in store.find(CREDENTIAL_USAGE)]


class TestQueuedDeletion:
    def test_manager_request_then_admin_approval(self, workflow, store, secret):
        outcome = workflow.request_delete("bill", "123", "duplicate", "manager-1", "manager", secret)
        assert outcome["status"] == "pending_approval"

        bill = store.find_one("bills", {"id": "123"})
        assert "deleted" not in bill
        pending = store.find_one(DELETION_REQUESTS, {"id": outcome["id"]})
        assert pending["status"] == "pending_approval"
        assert pending["originalData"]["finalAmount"] == 900
        assert usage_actions(store) == []

        resolved = workflow.resolve(outcome["id"], "admin-1", "admin", "approve", reason="ok", secret=secret)
        assert resolved == {"status": "deleted", "id": outcome["id"]}

        bill = store.find_one("bills", {"id": "123"})
        assert bill["deleted"] is True
        assert bill["deletedBy"] == "admin-1"
        assert bill["deletionReason"] == "duplicate"

        assert store.count(DELETION_REQUESTS) == 0
        entry = store.find_one(DELETION_LOG, {"id": outcome["id"]})
        assert entry["status"] == "deleted"
        assert entry["deletedBy"] == "manager-1"
        assert entry["approvedBy"] == "admin-1"
        assert entry["requestId"] == outcome["id"]
        assert usage_actions(store) == ["approve_deletion"]

    def test_reject_is_terminal(self, workflow, store, secret):
        outcome = workflow.request_delete("bill", "123", "duplicate", "manager-1", "manager", secret)
        workflow.resolve(outcome["id"], "admin-1", "admin", "reject", reason="needed", secret=secret)

        request = store.find_one(DELETION_REQUESTS, {"id": outcome["id"]})
        assert request["status"] == "rejected"
        assert request["restorable"] is False
        assert request["rejectionReason"] == "needed"
        assert "deleted" not in store.find_one("bills", {"id": "123"})

        with pytest.raises(InvalidStateError):
            workflow.resolve(outcome["id"], "admin-1", "admin", "approve", secret=secret)
        assert usage_actions(store) == ["reject_deletion"]

    def test_duplicate_pending_request(self, workflow, secret):
        workflow.request_delete("bill", "123", "duplicate", "manager-1", "manager", secret)
        with pytest.raises(InvalidStateError):
            workflow.request_delete("bill", "123", "again", "manager-2", "manager", secret)

    def test_new_request_allowed_after_rejection(self, workflow, secret):
        first = workflow.request_delete("bill", "123", "duplicate", "manager-1", "manager", secret)
        workflow.resolve(first["id"], "admin-1", "admin", "reject", secret=secret)
        second = workflow.request_delete("bill", "123", "really", "manager-1", "manager", secret)
        assert second["status"] == "pending_approval"

    def test_only_admin_resolves(self, workflow, secret):
        outcome = workflow.request_delete("bill", "123", None, "manager-1", "manager", secret)
        with pytest.raises(UnauthorizedError) as exc_info:
            workflow.resolve(outcome["id"], "manager-2", "manager", "approve", secret=secret)
        assert exc_info.value.status_code == 403

    def test_resolve_requires_credential(self, workflow, store, secret):
        outcome = workflow.request_delete("bill", "123", None, "manager-1", "manager", secret)
        with pytest.raises(UnauthorizedError):
            workflow.resolve(outcome["id"], "admin-1", "admin", "approve", secret=wrong(secret))
        assert store.find_one(DELETION_REQUESTS, {"id": outcome["id"]})["status"] == "pending_approval"

    def test_resolve_missing_request(self, workflow, secret):
        with pytest.raises(NotFoundError):
            workflow.resolve("nope", "admin-1", "admin", "approve", secret=secret)

    def test_resolve_invalid_decision(self, workflow, secret):
        with pytest.raises(ValidationError):
            workflow.resolve("nope", "admin-1", "admin", "maybe", secret=secret)

    def test_default_reason(self, workflow, store, secret):
        outcome = workflow.request_delete("job", "42", "", "manager-1", "manager", secret)
        assert store.find_one(DELETION_REQUESTS, {"id": outcome["id"]})["reason"] == "No reason provided"

    def test_direct_delete_supersedes_pending_request(self, workflow, store, secret):
        queued = workflow.request_delete("bill", "123", "duplicate", "manager-1", "manager", secret)
        direct = workflow.request_delete("bill", "123", "wrong customer", "admin-1", "admin", secret)
        assert direct["status"] == "deleted"

        request = store.find_one(DELETION_REQUESTS, {"id": queued["id"]})
        assert request["status"] == "rejected"
        assert request["rejectionReason"] == "Superseded by direct deletion"
        assert request["restorable"] is False
        assert workflow.list_records("admin", kind="pending")["pendingRequests"] == []

        workflow.restore(direct["id"], "admin-1", "admin", secret=secret)
        with pytest.raises(InvalidStateError):
            workflow.resolve(queued["id"], "admin-1", "admin", "approve", secret=secret)
        assert "deleted" not in store.find_one("bills", {"id": "123"})

    def test_direct_delete_leaves_other_targets_pending(self, workflow, store, secret):
        queued = workflow.request_delete("bill", "123", None, "manager-1", "manager", secret)
        workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        assert store.find_one(DELETION_REQUESTS, {"id": queued["id"]})["status"] == "pending_approval"


class TestDirectDeletion:
    def test_admin_delete_and_restore(self, workflow, store, secret):
        provenance = Provenance(ip_address="10.1.1.1", user_agent="pytest")
        outcome = workflow.request_delete("job", "42", "test data", "admin-1", "admin", secret, provenance)
        assert outcome["status"] == "deleted"

        job = store.find_one("jobs", {"id": "42"})
        assert job["deleted"] is True
        assert job["deletedBy"] == "admin-1"

        usage = store.find_one(CREDENTIAL_USAGE, {"action": "delete_job"})
        assert usage["targetId"] == "42"
        assert usage["ipAddress"] == "10.1.1.1"

        restored = workflow.restore(outcome["id"], "admin-1", "admin", reason="mistake", secret=secret)
        assert restored == {"status": "restored", "id": outcome["id"]}

        job = store.find_one("jobs", {"id": "42"})
        for field in TOMBSTONE_FIELDS:
            assert field not in job
        assert job["restoredBy"] == "admin-1"
        assert job["vehicleNo"] == "KA-01-1234"

        entry = store.find_one(DELETION_LOG, {"id": outcome["id"]})
        assert entry["status"] == "restored"
        assert entry["restorationReason"] == "mistake"

        with pytest.raises(InvalidStateError):
            workflow.restore(outcome["id"], "admin-1", "admin", secret=secret)

        assert usage_actions(store) == ["delete_job", "restore_item"]

    @pytest.mark.parametrize("item_type,item_id,action", [
        ("bill", "123", "delete_bill"),
        ("payment", "p-1", "delete_payment"),
    ])
    def test_usage_action_per_item_type(self, workflow, store, secret, item_type, item_id, action):
        workflow.request_delete(item_type, item_id, None, "admin-1", "admin", secret)
        assert usage_actions(store) == [action]

    def test_already_deleted(self, workflow, store, secret):
        workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        with pytest.raises(InvalidStateError) as exc_info:
            workflow.request_delete("job", "42", None, "admin-2", "admin", secret)
        assert exc_info.value.kind == "already_deleted"
        assert store.count(DELETION_LOG) == 1

    def test_delete_again_after_restore(self, workflow, store, secret):
        first = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        workflow.restore(first["id"], "admin-1", "admin", secret=secret)
        second = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)

        assert second["id"] != first["id"]
        assert store.count(DELETION_LOG, {"originalId": "42", "status": "deleted"}) == 1

    def test_delete_is_audited(self, workflow, store, secret):
        workflow.request_delete("job", "42", "test data", "admin-1", "admin", secret)
        entry = store.find_one(AUDIT_LOG, {"resourceId": "42"})
        assert entry["action"] == "delete"
        assert entry["oldData"]["vehicleNo"] == "KA-01-1234"

    def test_restore_is_admin_only(self, workflow, secret):
        outcome = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        with pytest.raises(UnauthorizedError):
            workflow.restore(outcome["id"], "manager-1", "manager", secret=secret)

    def test_restore_missing_entry(self, workflow, secret):
        with pytest.raises(NotFoundError):
            workflow.restore("nope", "admin-1", "admin", secret=secret)

    def test_restore_rolls_back_when_target_is_gone(self, workflow, store, secret):
        outcome = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        store.delete_one("jobs", {"id": "42"})

        with pytest.raises(NotFoundError):
            workflow.restore(outcome["id"], "admin-1", "admin", secret=secret)
        assert store.find_one(DELETION_LOG, {"id": outcome["id"]})["status"] == "deleted"
        assert usage_actions(store) == ["delete_job"]

    def test_concurrent_restores_have_one_winner(self, workflow, secret):
        outcome = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        results = []

        def restore():
            try:
                workflow.restore(outcome["id"], "admin-1", "admin", secret=secret)
                results.append("ok")
            except InvalidStateError:
                results.append("lost")

        threads = [threading.Thread(target=restore) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["lost", "lost", "lost", "ok"]


def wrong(secret):
    return f"{(int(secret) + 1) % 1000000:06d}"


class TestGuards:
    def test_unknown_item_type_fails_before_store_access(self, workflow, secret):
        with patch.object(workflow.store, "find") as find, patch.object(workflow.store, "count") as count:
            with pytest.raises(ValidationError) as exc_info:
                workflow.request_delete("invoice", "1", None, "admin-1", "admin", secret)
        assert exc_info.value.kind == "invalid_item_type"
        assert not find.called
        assert not count.called

    def test_staff_cannot_delete(self, workflow, secret):
        with pytest.raises(UnauthorizedError) as exc_info:
            workflow.request_delete("job", "42", None, "staff-1", "staff", secret)
        assert exc_info.value.kind == "forbidden"

    def test_invalid_credential(self, workflow, store, secret):
        with pytest.raises(UnauthorizedError) as exc_info:
            workflow.request_delete("job", "42", None, "admin-1", "admin", wrong(secret))
        assert exc_info.value.kind == "invalid_credential"
        assert "deleted" not in store.find_one("jobs", {"id": "42"})

    def test_malformed_credential(self, workflow, secret):
        with pytest.raises(ValidationError) as exc_info:
            workflow.request_delete("job", "42", None, "admin-1", "admin", "12ab")
        assert exc_info.value.kind == "invalid_credential_format"

    def test_repeated_wrong_codes_are_throttled(self, workflow, store, secret):
        provenance = Provenance(ip_address="203.0.113.9", user_agent="pytest")
        for _ in range(workflow.credentials.max_failed_attempts):
            with pytest.raises(UnauthorizedError):
                workflow.request_delete("job", "42", None, "admin-1", "admin", wrong(secret), provenance)

        with pytest.raises(UnauthorizedError) as exc_info:
            workflow.request_delete("job", "42", None, "admin-1", "admin", secret, provenance)
        assert exc_info.value.kind == "too_many_attempts"
        assert exc_info.value.status_code == 429
        assert "deleted" not in store.find_one("jobs", {"id": "42"})

    def test_last_weeks_credential_is_refused(self, workflow, clock, secret):
        clock.now += timedelta(days=7)
        with pytest.raises(UnauthorizedError):
            workflow.request_delete("job", "42", None, "admin-1", "admin", secret)

    def test_missing_item(self, workflow, secret):
        with pytest.raises(NotFoundError):
            workflow.request_delete("job", "404", None, "admin-1", "admin", secret)

    def test_credential_manager_must_share_store(self, store, tmp_path):
        other = CredentialManager(DocumentStore(str(tmp_path / "other.db")))
        with pytest.raises(ValueError):
            DeletionWorkflow(store, other)


class TestListing:
    def test_list_records(self, workflow, secret):
        deleted = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        pending = workflow.request_delete("bill", "123", None, "manager-1", "manager", secret)

        records = workflow.list_records("admin")
        assert [r.id for r in records["deletedItems"]] == [deleted["id"]]
        assert [r.id for r in records["pendingRequests"]] == [pending["id"]]

        assert workflow.list_records("admin", kind="deleted")["pendingRequests"] == []
        assert workflow.list_records("admin", kind="pending")["deletedItems"] == []

    def test_restored_entries_leave_the_deleted_list(self, workflow, secret):
        outcome = workflow.request_delete("job", "42", None, "admin-1", "admin", secret)
        workflow.restore(outcome["id"], "admin-1", "admin", secret=secret)
        assert workflow.list_records("admin")["deletedItems"] == []

    def test_list_is_admin_only(self, workflow):
        with pytest.raises(UnauthorizedError):
            workflow.list_records("manager")

    def test_invalid_kind(self, workflow):
        with pytest.raises(ValidationError):
            workflow.list_records("admin", kind="everything")

    def test_get_record(self, workflow, secret):
        pending = workflow.request_delete("bill", "123", None, "manager-1", "manager", secret)
        assert workflow.get_record(pending["id"], "admin").status == "pending_approval"
        with pytest.raises(NotFoundError):
            workflow.get_record("nope", "admin")
        with pytest.raises(UnauthorizedError):
            workflow.get_record(pending["id"], "manager")
