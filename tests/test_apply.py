"""Tests for replaying remote changes into the terminal store."""

import json
import sqlite3

import pytest

from possync.errors import ApplyError
from possync.terminal import (
    ApplierRegistry,
    CursorStore,
    RemoteChange,
    TerminalStore,
    apply_batch,
)


@pytest.fixture
def store():
    """Create an in-memory terminal store."""
    s = TerminalStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def registry():
    return ApplierRegistry()


def make_change(version, entity_type="product", entity_id=1, action="create", data=None):
    """Build a pulled change."""
    if data is None:
        data = {"id": entity_id, "name": f"Item {entity_id}", "price": 1.0}
    return RemoteChange(
        version=version,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        data=json.dumps(data) if not isinstance(data, str) else data,
        terminal_id=99,
    )


class TestRemoteChange:
    """Tests for pulled change parsing."""

    def test_from_dict(self):
        """Test parsing a pull response item."""
        change = RemoteChange.from_dict(
            {
                "id": 3,
                "version": "12",
                "entity_type": "product",
                "entity_id": 4,
                "action": "update",
                "data": '{"id": 4}',
                "terminal_id": 7,
                "store_id": 1,
            }
        )

        assert change.version == 12
        assert change.terminal_id == 7
        assert change.payload() == {"id": 4}

    def test_from_dict_requires_version(self):
        """Test a change without version is rejected."""
        with pytest.raises(KeyError):
            RemoteChange.from_dict({"entity_type": "product", "action": "create"})

    def test_payload_accepts_decoded_object(self):
        """Test data already decoded to a dict is used as-is."""
        change = make_change(1)
        change.data = {"id": 1, "name": "Cola"}

        assert change.payload()["name"] == "Cola"

    def test_malformed_payload(self):
        """Test invalid JSON raises ApplyError with the version."""
        change = make_change(5, data="{not json")

        with pytest.raises(ApplyError) as exc_info:
            change.payload()

        assert exc_info.value.version == 5

    def test_non_object_payload(self):
        """Test a JSON list is rejected."""
        change = make_change(5, data="[1, 2]")

        with pytest.raises(ApplyError):
            change.payload()


class TestApplierRegistry:
    """Tests for entity apply functions."""

    def test_builtin_types(self, registry):
        """Test the built-in entity types are registered."""
        assert registry.entity_types == ["category", "product", "user"]
        assert "product" in registry
        assert "sale" not in registry

    def test_create_inserts_row(self, store, registry):
        """Test create upserts by primary key."""
        registry.apply(store.conn, make_change(1, data={"id": 1, "name": "Cola", "price": 1.5}))

        row = store.fetch_row("products", 1)
        assert row["name"] == "Cola"
        assert row["price"] == 1.5

    def test_update_replaces_row(self, store, registry):
        """Test update overwrites the existing row."""
        registry.apply(store.conn, make_change(1, data={"id": 1, "name": "Cola", "price": 1.5}))
        registry.apply(
            store.conn,
            make_change(2, action="update", data={"id": 1, "name": "Cola Zero", "price": 1.7}),
        )

        row = store.fetch_row("products", 1)
        assert row["name"] == "Cola Zero"
        assert row["price"] == 1.7

    def test_update_of_missing_row_creates_it(self, store, registry):
        """Test an update for an unseen id still lands."""
        registry.apply(
            store.conn,
            make_change(1, entity_type="category", action="update", data={"id": 3, "name": "Snacks"}),
        )

        assert store.fetch_row("categories", 3)["name"] == "Snacks"

    def test_apply_twice_is_idempotent(self, store, registry):
        """Test replaying the same change leaves the same state."""
        change = make_change(1, data={"id": 1, "name": "Cola", "price": 1.5})

        registry.apply(store.conn, change)
        first = store.fetch_row("products", 1)
        registry.apply(store.conn, change)

        assert store.fetch_row("products", 1) == first
        count = store.conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]
        assert count == 1

    def test_delete_removes_row(self, store, registry):
        """Test delete by primary key."""
        registry.apply(store.conn, make_change(1))
        registry.apply(store.conn, make_change(2, action="delete", data={"id": 1}))

        assert store.fetch_row("products", 1) is None

    def test_delete_of_absent_row_is_noop(self, store, registry):
        """Test deleting a missing row succeeds."""
        assert registry.apply(store.conn, make_change(1, action="delete", data={"id": 1})) is True
        assert store.fetch_row("products", 1) is None

    def test_delete_falls_back_to_entity_id(self, store, registry):
        """Test a delete payload without id uses entity_id."""
        registry.apply(store.conn, make_change(1, entity_id=8))
        registry.apply(store.conn, make_change(2, entity_id=8, action="delete", data={}))

        assert store.fetch_row("products", 8) is None

    def test_unknown_entity_type_skipped(self, store, registry):
        """Test an unregistered type is skipped, not failed."""
        assert registry.apply(store.conn, make_change(1, entity_type="sale")) is False

    def test_missing_required_column(self, store, registry):
        """Test a constraint violation becomes ApplyError."""
        with pytest.raises(ApplyError) as exc_info:
            registry.apply(store.conn, make_change(4, entity_type="user", data={"id": 1}))

        assert exc_info.value.version == 4

    def test_missing_id(self, store, registry):
        """Test an upsert without id raises ApplyError."""
        with pytest.raises(ApplyError):
            registry.apply(store.conn, make_change(1, data={"name": "Cola"}))

    def test_unknown_fields_ignored(self, store, registry):
        """Test payload keys outside the table are dropped."""
        registry.apply(
            store.conn,
            make_change(1, data={"id": 1, "name": "Cola", "category_name": "Drinks"}),
        )

        assert store.fetch_row("products", 1)["name"] == "Cola"

    def test_nested_column_value(self, store, registry):
        """Test a value sqlite cannot bind becomes ApplyError."""
        change = make_change(
            6, entity_id=7, data={"id": 7, "name": "Cola", "description": {"en": "nested"}}
        )

        with pytest.raises(ApplyError) as exc_info:
            registry.apply(store.conn, change)

        assert exc_info.value.version == 6

    def test_custom_applier_error_becomes_apply_error(self, store, registry):
        """Test an arbitrary exception from an applier is tied to its change."""

        def broken(conn, action, payload):
            raise RuntimeError("no handler for this shape")

        registry.register("sale", broken)

        with pytest.raises(ApplyError) as exc_info:
            registry.apply(store.conn, make_change(3, entity_type="sale", data={"id": 1}))

        assert exc_info.value.version == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_storage_fault_not_wrapped(self, store, registry):
        """Test a store-level sqlite error propagates unchanged."""

        def locked(conn, action, payload):
            raise sqlite3.OperationalError("database is locked")

        registry.register("sale", locked)

        with pytest.raises(sqlite3.OperationalError):
            registry.apply(store.conn, make_change(1, entity_type="sale", data={"id": 1}))

    def test_register_custom_applier(self, store):
        """Test registering an apply function for a new entity type."""
        seen = []
        registry = ApplierRegistry(include_builtins=False)
        registry.register("sale", lambda conn, action, payload: seen.append((action, payload)))

        assert registry.apply(store.conn, make_change(1, entity_type="sale", data={"id": 1}))
        assert seen == [("create", {"id": 1})]
        assert "product" not in registry


class TestApplyBatch:
    """Tests for batch replay."""

    def test_applies_in_version_order(self, store, registry):
        """Test out-of-order input is sorted before applying."""
        changes = [
            make_change(3, action="update", data={"id": 1, "name": "Third"}),
            make_change(1, data={"id": 1, "name": "First"}),
            make_change(2, action="update", data={"id": 1, "name": "Second"}),
        ]

        report = apply_batch(store, registry, changes)

        assert report.applied == 3
        assert report.watermark == 3
        assert store.fetch_row("products", 1)["name"] == "Third"

    def test_empty_batch(self, store, registry):
        """Test an empty batch keeps the base watermark."""
        report = apply_batch(store, registry, [], base_version=7)

        assert report.applied == 0
        assert report.watermark == 7
        assert report.ok

    def test_skip_policy_continues_past_failure(self, store, registry):
        """Test skip policy records the failure and applies the rest."""
        changes = [
            make_change(1, data={"id": 1, "name": "A"}),
            make_change(2, data="{broken"),
            make_change(3, entity_id=2, data={"id": 2, "name": "B"}),
        ]

        report = apply_batch(store, registry, changes, policy="skip")

        assert report.applied == 2
        assert report.failed == [2]
        assert not report.halted
        assert not report.ok
        assert report.watermark == 3
        assert store.fetch_row("products", 2) is not None

    def test_unbindable_value_skipped(self, store, registry):
        """Test a nested payload value fails alone instead of aborting the batch."""
        changes = [
            make_change(1, entity_id=7, data={"id": 7, "name": "Tea", "description": {"en": "nested"}}),
            make_change(2, data={"id": 1, "name": "Cola"}),
        ]

        report = apply_batch(store, registry, changes, policy="skip")

        assert report.failed == [1]
        assert report.applied == 1
        assert report.watermark == 2
        assert store.fetch_row("products", 7) is None
        assert store.fetch_row("products", 1)["name"] == "Cola"

    def test_halt_policy_stops_at_failure(self, store, registry):
        """Test halt policy keeps the watermark below the failed change."""
        changes = [
            make_change(1, data={"id": 1, "name": "A"}),
            make_change(2, data="{broken"),
            make_change(3, entity_id=2, data={"id": 2, "name": "B"}),
        ]

        report = apply_batch(store, registry, changes, policy="halt")

        assert report.applied == 1
        assert report.failed == [2]
        assert report.halted
        assert report.watermark == 1
        assert store.fetch_row("products", 1) is not None
        assert store.fetch_row("products", 2) is None

    def test_failed_change_rolled_back_alone(self, store, registry):
        """Test a failing applier's partial writes are undone."""

        def half_applied(conn, action, payload):
            conn.execute("INSERT INTO categories (id, name) VALUES (50, 'partial')")
            raise ApplyError("rejected")

        registry.register("bundle", half_applied)
        changes = [
            make_change(1, data={"id": 1, "name": "A"}),
            make_change(2, entity_type="bundle", data={"id": 1}),
        ]

        report = apply_batch(store, registry, changes)

        assert report.failed == [2]
        assert store.fetch_row("categories", 50) is None
        assert store.fetch_row("products", 1) is not None

    def test_unknown_types_counted_as_skipped(self, store, registry):
        """Test unknown entity types advance the watermark."""
        changes = [make_change(1, entity_type="sale"), make_change(2)]

        report = apply_batch(store, registry, changes)

        assert report.skipped == 1
        assert report.applied == 1
        assert report.watermark == 2

    def test_finalize_runs_in_same_transaction(self, store, registry):
        """Test finalize writes commit together with the applies."""
        cursors = CursorStore(store)
        cursors.get(1)

        def finalize(conn, report):
            cursors.advance(1, report.watermark)

        apply_batch(store, registry, [make_change(5)], finalize=finalize)

        assert cursors.get(1).last_sync_version == 5

    def test_finalize_failure_rolls_back_applies(self, store, registry):
        """Test nothing commits if finalize raises."""
        cursors = CursorStore(store)
        cursors.get(1)

        def finalize(conn, report):
            cursors.advance(1, report.watermark)
            raise RuntimeError("crash before commit")

        with pytest.raises(RuntimeError):
            apply_batch(store, registry, [make_change(5)], finalize=finalize)

        assert store.fetch_row("products", 1) is None
        assert cursors.get(1).last_sync_version == 0
