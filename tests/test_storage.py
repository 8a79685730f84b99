"""
Tests for the SQL storage backend.

Tests cover appends, the derived deletion state and the guarantees the
storage gives recover().
"""

import pytest

from audit_trail_store import PersistenceFailure, SQLAuditLogStorage
from audit_trail_store.audit_trail.models import AuditAction, build_entry
from audit_trail_store.audit_trail.storage import LogEntryDB


def delete_entry(entity_id, actor_id="7", entity_type="Product"):
    return build_entry(
        "DELETE",
        entity_type,
        entity_id,
        actor_id,
        {"originalData": {"id": entity_id}, "deletedBy": actor_id},
    )


def recover_entry(entity_id, log_id, actor_id="7", entity_type="Product"):
    return build_entry(
        "RECOVER",
        entity_type,
        entity_id,
        actor_id,
        {"recoveredBy": actor_id, "originalLogId": log_id},
    )


class TestSQLAuditLogStorage:
    """Test SQL storage operations."""

    @pytest.mark.asyncio
    async def test_append_assigns_id_and_timestamp(self, sql_storage):
        """Test the store assigns id and created_at."""
        stored = await sql_storage.append(build_entry("CREATE", "Product", 1, "7"))

        assert stored.id is not None
        assert stored.created_at is not None

        fetched = await sql_storage.get_by_id(stored.id)
        assert fetched == stored

    @pytest.mark.asyncio
    async def test_ids_increase_in_append_order(self, sql_storage):
        """Test log ids follow append order."""
        first = await sql_storage.append(build_entry("CREATE", "Product", 1, "7"))
        second = await sql_storage.append(build_entry("UPDATE", "Product", 1, "7"))

        assert second.id > first.id

    @pytest.mark.asyncio
    async def test_get_missing_entry(self, sql_storage):
        """Test unknown ids return None."""
        assert await sql_storage.get_by_id(999) is None

    @pytest.mark.asyncio
    async def test_deleted_ids_follow_latest_action(self, sql_storage):
        """Test an entity is deleted while its latest DELETE beats its RECOVER."""
        first_delete = await sql_storage.append(delete_entry(1))
        await sql_storage.append(delete_entry(2))
        await sql_storage.append(delete_entry(3, entity_type="Order"))

        assert await sql_storage.deleted_ids("Product") == {1, 2}

        await sql_storage.append_recovery(recover_entry(1, first_delete.id))
        assert await sql_storage.deleted_ids("Product") == {2}

        # Deleted again after the recovery
        await sql_storage.append(delete_entry(1))
        assert await sql_storage.deleted_ids("Product") == {1, 2}
        assert await sql_storage.deleted_ids("Order") == {3}

    @pytest.mark.asyncio
    async def test_append_recovery_is_unique_per_delete(self, sql_storage):
        """Test a DELETE entry can be recovered only once."""
        deletion = await sql_storage.append(delete_entry(1))

        first = await sql_storage.append_recovery(recover_entry(1, deletion.id))
        second = await sql_storage.append_recovery(
            recover_entry(1, deletion.id, actor_id="8")
        )

        assert first is not None
        assert second is None
        history = await sql_storage.history("Product", 1)
        assert [e.action for e in history] == [AuditAction.RECOVER, AuditAction.DELETE]

    @pytest.mark.asyncio
    async def test_append_recovery_rejects_other_actions(self, sql_storage):
        """Test append_recovery only takes RECOVER entries."""
        with pytest.raises(ValueError):
            await sql_storage.append_recovery(delete_entry(1))

    @pytest.mark.asyncio
    async def test_recovered_after(self, sql_storage):
        """Test finding the RECOVER that follows a DELETE."""
        deletion = await sql_storage.append(delete_entry(1))
        assert await sql_storage.recovered_after("Product", 1, deletion.id) is None

        recovery = await sql_storage.append_recovery(recover_entry(1, deletion.id))

        found = await sql_storage.recovered_after("Product", 1, deletion.id)
        assert found.id == recovery.id

    @pytest.mark.asyncio
    async def test_latest_deletion_id(self, sql_storage):
        """Test finding the newest DELETE of an entity."""
        assert await sql_storage.latest_deletion_id("Product", 1) is None

        await sql_storage.append(delete_entry(1))
        latest = await sql_storage.append(delete_entry(1))
        await sql_storage.append(delete_entry(2))

        assert await sql_storage.latest_deletion_id("Product", 1) == latest.id

    @pytest.mark.asyncio
    async def test_list_deleted_one_row_per_entity(self, sql_storage):
        """Test the recycle bin shows each deleted entity once, newest first."""
        first = await sql_storage.append(delete_entry(1))
        await sql_storage.append_recovery(recover_entry(1, first.id))
        latest = await sql_storage.append(delete_entry(1))
        other = await sql_storage.append(delete_entry(2))

        entries, total = await sql_storage.list_deleted("Product", 10, 0)

        assert total == 2
        assert [e.id for e in entries] == [other.id, latest.id]

    @pytest.mark.asyncio
    async def test_list_deleted_pagination(self, sql_storage):
        """Test limit and offset over the recycle bin."""
        for entity_id in range(1, 6):
            await sql_storage.append(delete_entry(entity_id))

        entries, total = await sql_storage.list_deleted(None, 2, 2)

        assert total == 5
        assert [e.entity_id for e in entries] == [3, 2]

    @pytest.mark.asyncio
    async def test_list_entries_filter(self, sql_storage):
        """Test listing the whole log by entity type."""
        await sql_storage.append(build_entry("CREATE", "Product", 1, "7"))
        await sql_storage.append(build_entry("CREATE", "Order", 1, "7"))
        await sql_storage.append(build_entry("UPDATE", "Product", 1, "7"))

        entries, total = await sql_storage.list_entries("Product", 10, 0)
        assert total == 2
        assert [e.action for e in entries] == [AuditAction.UPDATE, AuditAction.CREATE]

        _, total_all = await sql_storage.list_entries(None, 10, 0)
        assert total_all == 3

    @pytest.mark.asyncio
    async def test_history_limit(self, sql_storage):
        """Test history honors its limit and newest-first order."""
        for action in ("CREATE", "UPDATE", "UPDATE"):
            await sql_storage.append(build_entry(action, "Product", 1, "7"))

        history = await sql_storage.history("Product", 1, limit=2)

        assert len(history) == 2
        assert history[0].id > history[1].id

    @pytest.mark.asyncio
    async def test_corrupt_row_raises_persistence_failure(self, sql_storage):
        """Test rows that no longer parse surface as storage failures."""
        with sql_storage.SessionLocal() as session:
            row = LogEntryDB(
                actor_id="7",
                action="DELETE",
                entity_type="Product",
                entity_id=1,
                payload={"kind": "DELETE"},
            )
            session.add(row)
            session.commit()
            row_id = row.id

        with pytest.raises(PersistenceFailure, match="Corrupt audit log entry"):
            await sql_storage.get_by_id(row_id)

    @pytest.mark.asyncio
    async def test_uninitialized_storage(self):
        """Test using storage before initialize() fails cleanly."""
        storage = SQLAuditLogStorage("sqlite:///:memory:")

        with pytest.raises(PersistenceFailure, match="not initialized"):
            await storage.deleted_ids("Product")
