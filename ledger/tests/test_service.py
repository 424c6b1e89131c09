"""
Unit Tests for the Ledger Service

Tests cover:
1. Member id assignment and member status
2. Reference validation before any write
3. Admin-only mutations
4. Loan status sync after payment changes
5. Users, chat and backups
6. Concurrent edits re-applied on version conflict
"""

import asyncio
import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from ledger.models import LoanStatus, Role
from ledger.service import (
    CHAT_PATH,
    LOANS_PATH,
    MEMBERS_PATH,
    PAYMENTS_PATH,
    Actor,
    AuthorizationError,
    LedgerService,
    RecordNotFoundError,
    RecordValidationError,
    ReferentialIntegrityError,
    next_member_id,
)
from store import ConflictError, CorruptDocumentError, DocumentStore, InMemoryBackend


ADMIN = Actor(user_id="admin", role=Role.ADMIN)
VIEWER = Actor(user_id="viewer", role=Role.VIEWER)


def run(coro):
    return asyncio.run(coro)


def make_service(backend=None):
    backend = backend or InMemoryBackend()
    return LedgerService(DocumentStore(backend)), backend


def add_member(service, name="Sita Sharma"):
    return run(service.members.create(ADMIN, {
        "name": name, "phone": "9800000000", "joinDate": "2025-01-15",
    }))


def add_loan(service, member_id, principal=50000):
    return run(service.loans.create(ADMIN, {
        "memberId": member_id, "principal": principal, "interestRate": 20,
        "startDate": "2025-10-01", "termMonths": 6,
    }))


def stored(backend, path):
    return json.loads(backend.files[path].content)


class RacingMembersBackend(InMemoryBackend):
    """Another writer adds a member just before our first write to members.json."""

    def __init__(self):
        super().__init__()
        self.raced = False

    async def put(self, path, content, message, version=None):
        if path == MEMBERS_PATH and not self.raced:
            self.raced = True
            foreign = [{
                "id": "M-0001", "name": "Other Writer", "phone": "1",
                "joinDate": "2025-01-01", "active": True,
            }]
            current = self.files.get(path)
            await InMemoryBackend.put(
                self, path, json.dumps(foreign).encode(), "foreign",
                current.version if current else None,
            )
        return await super().put(path, content, message, version)


class TestMembers:
    """Tests for member creation and status."""

    def test_member_ids_are_sequential(self):
        service, backend = make_service()

        first = add_member(service, "Sita")
        second = add_member(service, "Hari")

        assert (first.id, second.id) == ("M-0001", "M-0002")
        assert first.active is True
        assert [m["id"] for m in stored(backend, MEMBERS_PATH)] == ["M-0001", "M-0002"]

    def test_next_member_id_skips_foreign_ids(self):
        assert next_member_id([]) == "M-0001"
        assert next_member_id(["M-0003", "legacy-7", "M-0010"]) == "M-0011"

    def test_conflicting_create_is_reapplied(self):
        service, backend = make_service(RacingMembersBackend())

        member = add_member(service, "Sita")

        assert member.id == "M-0002"
        assert [m["name"] for m in stored(backend, MEMBERS_PATH)] == ["Other Writer", "Sita"]

    def test_set_active_replaces_legacy_flag(self):
        backend = InMemoryBackend({MEMBERS_PATH: json.dumps([{
            "id": "M-0001", "name": "Sita", "phone": "1", "joinDate": "2025-01-01", "isActive": True,
        }]).encode()})
        service, _ = make_service(backend)

        member = run(service.members.set_active(ADMIN, "M-0001", False))

        assert member.active is False
        assert stored(backend, MEMBERS_PATH)[0]["active"] is False
        assert "isActive" not in stored(backend, MEMBERS_PATH)[0]

    def test_update_keeps_fields_not_in_request(self):
        service, backend = make_service()
        add_member(service)
        run(service.members.set_active(ADMIN, "M-0001", False))

        updated = run(service.members.update(ADMIN, "M-0001", {
            "name": "Sita Devi", "phone": "9811111111", "joinDate": "2025-01-15",
        }))

        assert updated.name == "Sita Devi"
        assert updated.active is False

    def test_delete_blocked_when_history_exists(self):
        service, backend = make_service()
        member = add_member(service)
        run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 1000, "date": "2025-10-01"}))

        with pytest.raises(ReferentialIntegrityError, match="savings"):
            run(service.members.delete(ADMIN, member.id))
        assert len(stored(backend, MEMBERS_PATH)) == 1

    def test_delete_member_without_history(self):
        service, backend = make_service()
        member = add_member(service)

        run(service.members.delete(ADMIN, member.id))

        assert stored(backend, MEMBERS_PATH) == []

    def test_update_unknown_member(self):
        service, _ = make_service()

        with pytest.raises(RecordNotFoundError):
            run(service.members.update(ADMIN, "M-0404", {
                "name": "Nobody", "phone": "1", "joinDate": "2025-01-01",
            }))


class TestStoredDocuments:
    """Tests for existing documents that are empty or malformed."""

    def test_create_member_in_empty_file(self):
        service, backend = make_service(InMemoryBackend({MEMBERS_PATH: b""}))

        member = add_member(service)

        assert member.id == "M-0001"
        assert [m["id"] for m in stored(backend, MEMBERS_PATH)] == ["M-0001"]

    def test_send_chat_into_blank_file(self):
        service, backend = make_service(InMemoryBackend({CHAT_PATH: b"\n"}))

        run(service.chat.send(ADMIN, {"text": "hello"}))

        assert [m["text"] for m in stored(backend, CHAT_PATH)] == ["hello"]

    def test_malformed_row_is_a_corrupt_document(self):
        backend = InMemoryBackend({MEMBERS_PATH: json.dumps([{"id": "M-0001", "name": "Sita"}]).encode()})
        service, _ = make_service(backend)

        with pytest.raises(CorruptDocumentError) as excinfo:
            run(service.members.list())
        assert excinfo.value.path == MEMBERS_PATH

    def test_unparseable_document_surfaces_on_reports(self):
        service, _ = make_service(InMemoryBackend({LOANS_PATH: b"{not json"}))

        with pytest.raises(CorruptDocumentError):
            run(service.dashboard())


class TestValidation:
    """Tests for validation and authorization before any write."""

    def test_viewer_cannot_mutate(self):
        service, backend = make_service()

        with pytest.raises(AuthorizationError):
            run(service.members.create(VIEWER, {"name": "Sita", "phone": "1", "joinDate": "2025-01-01"}))
        assert backend.commits == []

    def test_inactive_member_cannot_save(self):
        service, backend = make_service()
        member = add_member(service)
        run(service.members.set_active(ADMIN, member.id, False))
        commits = len(backend.commits)

        with pytest.raises(RecordValidationError, match="Inactive"):
            run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 1000, "date": "2025-10-01"}))
        assert len(backend.commits) == commits

    def test_unknown_member_is_rejected(self):
        service, backend = make_service()

        with pytest.raises(RecordValidationError, match="M-0099"):
            run(service.fines.create(ADMIN, {
                "memberId": "M-0099", "amount": 100, "date": "2025-10-01", "reason": "Other",
            }))
        assert backend.commits == []

    def test_zero_amount_is_rejected(self):
        service, _ = make_service()
        member = add_member(service)

        with pytest.raises(RecordValidationError):
            run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 0, "date": "2025-10-01"}))

    def test_bulk_savings(self):
        service, backend = make_service()
        a = add_member(service, "A")
        b = add_member(service, "B")

        records = run(service.savings.bulk_create(ADMIN, {
            "memberIds": [a.id, b.id], "amount": 500, "date": "2025-10-01",
        }))

        assert [s.member_id for s in records] == [a.id, b.id]
        assert all(s.remarks == "Bulk fixed saving" for s in records)
        assert backend.commits[-1] == "Add 2 savings"

    def test_bulk_savings_rejects_inactive_members(self):
        service, _ = make_service()
        a = add_member(service, "A")
        b = add_member(service, "B")
        run(service.members.set_active(ADMIN, b.id, False))

        with pytest.raises(RecordValidationError, match=b.id):
            run(service.savings.bulk_create(ADMIN, {
                "memberIds": [a.id, b.id], "amount": 500, "date": "2025-10-01",
            }))
        assert run(service.savings.list()) == []

    def test_update_keeps_unknown_fields(self):
        service, backend = make_service()
        run(service.store.write("data/expenditures.json", [{
            "id": "E-1", "date": "2025-10-01", "item": "Tea", "amount": 200, "approvedBy": "admin",
        }]))

        run(service.expenditures.update(ADMIN, "E-1", {"date": "2025-10-01", "item": "Tea", "amount": 250}))

        assert stored(backend, "data/expenditures.json") == [{
            "id": "E-1", "date": "2025-10-01", "item": "Tea", "amount": 250, "approvedBy": "admin",
        }]


class TestLoansAndPayments:
    """Tests for payment references and loan status sync."""

    def test_new_loan_is_active(self):
        service, backend = make_service()
        member = add_member(service)

        loan = add_loan(service, member.id)

        assert loan.status == LoanStatus.ACTIVE
        assert stored(backend, LOANS_PATH)[0]["status"] == "active"
        assert stored(backend, LOANS_PATH)[0]["principal"] == 50000

    def test_payment_takes_member_from_loan(self):
        service, backend = make_service()
        member = add_member(service)
        loan = add_loan(service, member.id)

        payment = run(service.payments.create(ADMIN, {
            "loanId": loan.id, "date": "2025-11-01", "principalPaid": 20000, "interestPaid": 833.33,
        }))

        assert payment.member_id == member.id
        assert payment.interest_paid == Decimal("833.33")
        assert stored(backend, PAYMENTS_PATH)[0]["memberId"] == member.id

    def test_payment_for_other_member_is_rejected(self):
        service, _ = make_service()
        member = add_member(service, "A")
        other = add_member(service, "B")
        loan = add_loan(service, member.id)

        with pytest.raises(RecordValidationError, match="does not match"):
            run(service.payments.create(ADMIN, {
                "loanId": loan.id, "memberId": other.id, "date": "2025-11-01", "principalPaid": 100,
            }))

    def test_payment_for_unknown_loan_is_rejected(self):
        service, backend = make_service()

        with pytest.raises(RecordValidationError, match="L-missing"):
            run(service.payments.create(ADMIN, {"loanId": "L-missing", "date": "2025-11-01"}))
        assert PAYMENTS_PATH not in backend.files

    def test_payoff_closes_and_removal_reopens(self):
        service, _ = make_service()
        member = add_member(service)
        loan = add_loan(service, member.id)

        payment = run(service.payments.create(ADMIN, {
            "loanId": loan.id, "date": "2025-11-01", "principalPaid": 50000,
        }))
        assert run(service.loans.get(loan.id)).status == LoanStatus.CLOSED

        run(service.payments.delete(ADMIN, payment.id))
        assert run(service.loans.get(loan.id)).status == LoanStatus.ACTIVE

    def test_sync_is_idempotent(self):
        service, backend = make_service()
        member = add_member(service)
        loan = add_loan(service, member.id)
        run(service.store.write(PAYMENTS_PATH, [{
            "id": "P-1", "loanId": loan.id, "memberId": member.id, "date": "2025-11-01",
            "principalPaid": 50000, "interestPaid": 0,
        }]))

        flipped = run(service.loans.sync_statuses())
        commits = len(backend.commits)

        assert [l.id for l in flipped] == [loan.id]
        assert run(service.loans.sync_statuses()) == []
        assert len(backend.commits) == commits

    def test_positions(self):
        service, _ = make_service()
        member = add_member(service)
        loan = add_loan(service, member.id)
        run(service.payments.create(ADMIN, {"loanId": loan.id, "date": "2025-11-01", "principalPaid": 20000}))

        [position] = run(service.loans.positions())

        assert position.outstanding_principal == Decimal("30000")
        assert position.monthly_interest == Decimal("500.00")

    def test_consistency_issues(self):
        service, _ = make_service()
        member = add_member(service)
        loan = add_loan(service, member.id)
        run(service.store.write(PAYMENTS_PATH, [{
            "id": "P-1", "loanId": loan.id, "memberId": "M-0042", "date": "2025-11-01",
            "principalPaid": 10, "interestPaid": 0,
        }]))

        assert [p.id for p in run(service.consistency_issues())] == ["P-1"]


class TestReports:
    def test_member_summary_and_dashboard(self):
        service, _ = make_service()
        member = add_member(service)
        loan = add_loan(service, member.id, principal=10000)
        run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 1000, "date": "2025-10-01"}))
        run(service.payments.create(ADMIN, {
            "loanId": loan.id, "date": "2025-11-01", "principalPaid": 4000, "interestPaid": 166.67,
        }))

        summary = run(service.member_summary(member.id))
        dashboard = run(service.dashboard())

        assert summary.name == "Sita Sharma"
        assert summary.net_contribution == Decimal("1000") + Decimal("166.67") - Decimal("10000")
        assert dashboard.total_outstanding == Decimal("6000")
        assert dashboard.total_members == 1

    def test_member_summary_unknown_member(self):
        service, _ = make_service()

        with pytest.raises(RecordNotFoundError):
            run(service.member_summary("M-0404"))

    def test_defaulters(self):
        service, _ = make_service()
        member = add_member(service)
        run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 1000, "date": "2025-11-05"}))
        add_loan(service, member.id)

        defaulters = run(service.defaulters(date(2025, 12, 10)))

        assert [d.id for d in defaulters["saving"]] == [member.id]
        assert [d.id for d in defaulters["interest"]] == [member.id]

    def test_period_report(self):
        service, _ = make_service()
        member = add_member(service)
        run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 1000, "date": "2025-10-31"}))
        run(service.savings.create(ADMIN, {"memberId": member.id, "amount": 700, "date": "2025-11-01"}))

        report = run(service.period_report(date(2025, 10, 1), date(2025, 10, 31)))

        assert report.total_savings == Decimal("1000")


class TestUsers:
    def test_add_and_verify(self):
        service, backend = make_service()

        user = run(service.users.add(ADMIN, {"userId": "ram", "name": "Ram", "password": "s3cret"}))

        assert user.role == Role.VIEWER
        saved = stored(backend, "data/settings.json")["users"][0]
        assert saved["userId"] == "ram"
        assert saved["password"] != "s3cret"
        assert run(service.users.verify_credentials("ram", "s3cret")).user_id == "ram"
        assert run(service.users.verify_credentials("ram", "wrong")) is None

    def test_duplicate_user_is_rejected(self):
        service, _ = make_service()
        run(service.users.add(ADMIN, {"userId": "ram", "name": "Ram", "password": "a"}))

        with pytest.raises(RecordValidationError, match="already exists"):
            run(service.users.add(ADMIN, {"userId": "ram", "name": "Ram 2", "password": "b"}))

    def test_delete_user(self):
        service, _ = make_service()
        run(service.users.add(ADMIN, {"userId": "ram", "name": "Ram", "password": "a"}))

        run(service.users.delete(ADMIN, "ram"))

        assert run(service.users.list()) == []
        with pytest.raises(RecordNotFoundError):
            run(service.users.delete(ADMIN, "ram"))

    def test_viewer_cannot_manage_users(self):
        service, _ = make_service()

        with pytest.raises(AuthorizationError):
            run(service.users.add(VIEWER, {"userId": "ram", "name": "Ram", "password": "a"}))


class TestChat:
    def test_only_sender_can_edit(self):
        service, _ = make_service()
        alice = Actor(user_id="alice", role=Role.VIEWER)
        bob = Actor(user_id="bob", role=Role.VIEWER)
        message = run(service.chat.send(alice, {"text": "hello"}))

        with pytest.raises(AuthorizationError):
            run(service.chat.edit(bob, message.id, {"text": "hijacked"}))

        edited = run(service.chat.edit(alice, message.id, {"text": "hello all"}))
        assert edited.edited is True
        assert run(service.chat.list())[0].text == "hello all"

    def test_admin_or_sender_can_delete(self):
        service, _ = make_service()
        alice = Actor(user_id="alice", role=Role.VIEWER)
        bob = Actor(user_id="bob", role=Role.VIEWER)
        first = run(service.chat.send(alice, {"text": "one"}))
        second = run(service.chat.send(alice, {"text": "two"}))

        with pytest.raises(AuthorizationError):
            run(service.chat.delete(bob, first.id))
        run(service.chat.delete(alice, first.id))
        run(service.chat.delete(ADMIN, second.id))

        assert run(service.chat.list()) == []

    def test_mark_seen_once(self):
        service, backend = make_service()
        alice = Actor(user_id="alice", role=Role.VIEWER)
        run(service.chat.send(alice, {"text": "hello"}))

        run(service.chat.mark_seen(ADMIN))
        commits = len(backend.commits)
        run(service.chat.mark_seen(ADMIN))

        assert run(service.chat.list())[0].seen_by == ["admin"]
        assert len(backend.commits) == commits


class TestBackups:
    def test_create_list_and_restore(self):
        service, backend = make_service()
        service.backups.clock = lambda: datetime(2025, 12, 1, 10, 30, 0)
        add_member(service, "Sita")
        run(service.users.add(ADMIN, {"userId": "ram", "name": "Ram", "password": "a"}))

        path = run(service.backups.create(ADMIN))
        add_member(service, "Hari")
        restored = run(service.backups.restore(ADMIN, path))

        assert path == "backups/backup-2025-12-01T10-30-00.json"
        assert run(service.backups.list()) == [path]
        assert MEMBERS_PATH in restored and "data/settings.json" in restored
        assert [m.name for m in run(service.members.list())] == ["Sita"]
        assert [u.user_id for u in run(service.users.list())] == ["ram"]

    def test_backup_excludes_chat(self):
        service, backend = make_service()
        service.backups.clock = lambda: datetime(2025, 12, 1, 10, 30, 0)
        run(service.chat.send(ADMIN, {"text": "hello"}))

        path = run(service.backups.create(ADMIN))

        assert "chat" not in stored(backend, path)
        assert stored(backend, path)["members"] == []

    def test_restore_from_uploaded_snapshot(self):
        service, _ = make_service()
        add_member(service, "Sita")

        run(service.backups.restore(ADMIN, {"timestamp": "upload", "members": []}))

        assert run(service.members.list()) == []

    def test_missing_backup(self):
        service, _ = make_service()

        with pytest.raises(RecordNotFoundError):
            run(service.backups.restore(ADMIN, "backups/backup-missing.json"))

    def test_second_backup_in_same_second_does_not_overwrite(self):
        service, backend = make_service()
        service.backups.clock = lambda: datetime(2025, 12, 1, 10, 30, 0)
        add_member(service, "Sita")
        path = run(service.backups.create(ADMIN))
        add_member(service, "Hari")

        with pytest.raises(ConflictError):
            run(service.backups.create(ADMIN))

        assert [m["name"] for m in stored(backend, path)["members"]] == ["Sita"]

    def test_viewer_cannot_back_up(self):
        service, _ = make_service()

        with pytest.raises(AuthorizationError):
            run(service.backups.create(VIEWER))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
