"""Tests for MemoryStore accounts, sessions and snapshot persistence."""

import threading
from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import AccountRole, AccountStatus, Session, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestAccounts:
    def test_create_normalizes_email(self, memory_store):
        account = memory_store.create_account("  Alice@Example.COM ", "digest", name="Alice")

        assert account.email == "alice@example.com"
        assert account.role == AccountRole.USER
        assert account.status == AccountStatus.ACTIVE
        assert memory_store.get_account_by_email("ALICE@example.com").id == account.id

    def test_duplicate_email_violates_constraint(self, memory_store):
        memory_store.create_account("alice@example.com", "digest")

        with pytest.raises(ConstraintViolation):
            memory_store.create_account(" ALICE@example.com", "digest")

    def test_update_status_and_role(self, memory_store):
        account = memory_store.create_account("alice@example.com", "digest")

        memory_store.update_account_status(account.id, AccountStatus.SUSPENDED)
        memory_store.update_account_role(account.id, AccountRole.ADMIN)

        reloaded = memory_store.get_account(account.id)
        assert reloaded.status == AccountStatus.SUSPENDED
        assert reloaded.role == AccountRole.ADMIN
        assert memory_store.update_account_status("missing", AccountStatus.ACTIVE) is None

    def test_view_has_no_password_hash(self, memory_store):
        view = memory_store.create_account("alice@example.com", "digest").view()

        assert not hasattr(view, "password_hash")


class TestSessions:
    def test_insert_requires_account(self, memory_store):
        orphan = Session.new("missing", "digest", utcnow() + timedelta(hours=1))

        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(orphan)

    def test_list_sessions_orders_by_creation(self, memory_store):
        account = memory_store.create_account("alice@example.com", "digest")
        first = memory_store.insert_session(
            Session.new(account.id, "d1", utcnow() + timedelta(hours=1))
        )
        second = memory_store.insert_session(
            Session.new(account.id, "d2", utcnow() + timedelta(hours=1))
        )

        assert [s.id for s in memory_store.list_sessions(account.id)] == [first.id, second.id]

    def test_concurrent_delete_has_single_winner(self, memory_store):
        account = memory_store.create_account("alice@example.com", "digest")
        session = memory_store.insert_session(
            Session.new(account.id, "digest", utcnow() + timedelta(hours=1))
        )
        results = []
        barrier = threading.Barrier(8)

        def _delete():
            barrier.wait()
            results.append(memory_store.delete_session(session.id))

        threads = [threading.Thread(target=_delete) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account("alice@example.com", "digest", name="Alice")
        session = store.insert_session(
            Session.new(
                account.id,
                "session-digest",
                utcnow() + timedelta(days=7),
                ip_addr="127.0.0.1",
            )
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored_account = reloaded.get_account(account.id)
        restored_session = reloaded.get_session(session.id)
        assert restored_account.email == "alice@example.com"
        assert restored_account.name == "Alice"
        assert restored_session.token_hash == "session-digest"
        assert restored_session.expires_at == session.expires_at
        assert restored_session.ip_addr == "127.0.0.1"

    def test_deleted_session_stays_deleted_after_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account("alice@example.com", "digest")
        session = store.insert_session(
            Session.new(account.id, "digest", utcnow() + timedelta(hours=1))
        )
        store.delete_session(session.id)

        assert MemoryStore(fs_root=str(tmp_path)).get_session(session.id) is None
