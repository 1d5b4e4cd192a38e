"""End-to-end tests for change capture on synchronous SQLAlchemy sessions."""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError

from audittrail.audit.models import AuditAction, utc_now
from audittrail.audit.store import AuditQuery
from audittrail.config import AuditOptions
from audittrail.errors import AuditPersistenceError
from tests.entities import BusinessBase, Customer, OrderLine, Product, Setting
from tests.stores import failing_store


def add_product(session_factory, name="Test Product", price="9.99", **kwargs) -> int:
    with session_factory() as session:
        product = Product(name=name, price=Decimal(price), **kwargs)
        session.add(product)
        session.commit()
        return product.id


class TestCreate:
    """Added entities produce one Create entry each."""

    def test_create_product(self, audited_sessions):
        """Create carries all properties as new values and no old values."""
        session_factory, store = audited_sessions

        pid = add_product(session_factory)

        entries = store.all()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.entity_name == "Product"
        assert entry.action == AuditAction.CREATE.value
        assert entry.entity_id == str(pid)
        assert entry.old_values is None

        new = entry.new_values_dict()
        assert new["name"] == "Test Product"
        assert new["price"] == 9.99
        assert set(new) == {"id", "name", "price", "description", "is_deleted"}

    def test_new_values_follow_column_order(self, audited_sessions):
        """Serialized properties follow the mapper's column order."""
        session_factory, store = audited_sessions

        add_product(session_factory)

        assert list(store.all()[0].new_values_dict()) == [
            "id", "name", "price", "description", "is_deleted",
        ]

    def test_one_entry_per_added_entity(self, audited_sessions):
        """Several entities saved together yield one entry each."""
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add_all([
                Product(name="A", price=Decimal("1")),
                Product(name="B", price=Decimal("2")),
                Customer(name="Ann", email="ann@example.com", password_hash="x"),
            ])
            session.commit()

        entries = store.all()
        assert len(entries) == 3
        assert all(e.action == "Create" for e in entries)
        assert sorted(e.entity_name for e in entries) == ["Customer", "Product", "Product"]

    def test_changed_at_is_utc_and_current(self, audited_sessions):
        """Timestamps are taken in UTC at save time."""
        session_factory, store = audited_sessions

        before = utc_now()
        add_product(session_factory)
        after = utc_now()

        changed_at = store.all()[0].changed_at
        assert changed_at.utcoffset().total_seconds() == 0
        assert before <= changed_at <= after


class TestUpdate:
    """Modified entities produce Update entries with only changed properties."""

    def test_price_change(self, audited_sessions):
        """Price 9.99 -> 19.99 records only the price."""
        session_factory, store = audited_sessions
        pid = add_product(session_factory)

        with session_factory() as session:
            product = session.get(Product, pid)
            product.price = Decimal("19.99")
            session.commit()

        entries = store.all()
        assert len(entries) == 2
        update = entries[1]
        assert update.action == "Update"
        assert update.entity_id == str(pid)
        assert update.old_values_dict() == {"price": 9.99}
        assert update.new_values_dict() == {"price": 19.99}

    def test_multiple_changed_properties(self, audited_sessions):
        """Old and new maps hold exactly the changed property names."""
        session_factory, store = audited_sessions
        pid = add_product(session_factory)

        with session_factory() as session:
            product = session.get(Product, pid)
            product.name = "Renamed"
            product.description = "Now described"
            session.commit()

        update = store.all()[-1]
        assert set(update.old_values_dict()) == {"name", "description"}
        assert set(update.new_values_dict()) == {"name", "description"}
        assert update.old_values_dict()["description"] is None
        assert update.new_values_dict()["name"] == "Renamed"

    def test_unchanged_entity_produces_nothing(self, audited_sessions):
        """Loading and committing without changes records nothing."""
        session_factory, store = audited_sessions
        pid = add_product(session_factory)

        with session_factory() as session:
            session.get(Product, pid)
            session.commit()

        assert len(store) == 1

    def test_same_value_assignment_produces_nothing(self, audited_sessions):
        """Reassigning an identical value is not a modification."""
        session_factory, store = audited_sessions
        pid = add_product(session_factory)

        with session_factory() as session:
            product = session.get(Product, pid)
            product.name = "Test Product"
            session.commit()

        assert len(store) == 1

    def test_flushes_accumulate_until_commit(self, audited_sessions):
        """Entries from every flush in a transaction persist together."""
        session_factory, store = audited_sessions

        with session_factory() as session:
            product = Product(name="Draft", price=Decimal("5"))
            session.add(product)
            session.flush()
            assert len(store) == 0

            product.name = "Final"
            session.commit()

        assert [e.action for e in store.all()] == ["Create", "Update"]
        assert store.all()[1].new_values_dict() == {"name": "Final"}


class TestDelete:
    """Deleted entities produce Delete entries with the last known state."""

    def test_delete_product(self, audited_sessions):
        session_factory, store = audited_sessions
        pid = add_product(session_factory)

        with session_factory() as session:
            session.delete(session.get(Product, pid))
            session.commit()

        delete = store.all()[-1]
        assert delete.action == "Delete"
        assert delete.entity_id == str(pid)
        assert delete.new_values is None
        old = delete.old_values_dict()
        assert old["name"] == "Test Product"
        assert old["price"] == 9.99
        assert old["id"] == pid


class TestSoftDelete:
    """Flag flips to true are classified as SoftDelete."""

    def test_soft_delete(self, audited_sessions):
        session_factory, store = audited_sessions
        pid = add_product(session_factory, is_deleted=False)

        with session_factory() as session:
            session.get(Product, pid).is_deleted = True
            session.commit()

        entry = store.all()[-1]
        assert entry.action == "SoftDelete"
        assert entry.old_values_dict() == {"is_deleted": False}
        assert entry.new_values_dict() == {"is_deleted": True}

    def test_restore_is_an_update(self, audited_sessions):
        """Flipping the flag back to false is a plain update."""
        session_factory, store = audited_sessions
        pid = add_product(session_factory, is_deleted=True)

        with session_factory() as session:
            session.get(Product, pid).is_deleted = False
            session.commit()

        assert store.all()[-1].action == "Update"

    def test_tracking_disabled(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(AuditOptions(track_soft_deletes=False))
        pid = add_product(session_factory, is_deleted=False)

        with session_factory() as session:
            session.get(Product, pid).is_deleted = True
            session.commit()

        assert store.all()[-1].action == "Update"

    def test_custom_flag_property(self, make_audited_sessions):
        """A different flag property name is honored."""
        session_factory, store = make_audited_sessions(
            AuditOptions(soft_delete_property_name="description")
        )
        pid = add_product(session_factory)

        with session_factory() as session:
            # Not a boolean true, so not a soft delete
            session.get(Product, pid).description = "archived"
            session.commit()

        assert store.all()[-1].action == "Update"


class TestSameSessionAfterCommit:
    """Attributes expired by commit still yield their stored previous values."""

    def test_update_after_commit(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            product = Product(name="Test Product", price=Decimal("9.99"))
            session.add(product)
            session.commit()
            product.price = Decimal("19.99")
            session.commit()

        create, update = store.all()
        assert update.action == "Update"
        assert update.entity_id == create.entity_id
        assert update.old_values_dict() == {"price": 9.99}
        assert update.new_values_dict() == {"price": 19.99}

    def test_soft_delete_after_commit(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            product = Product(name="Test Product", price=Decimal("9.99"), is_deleted=False)
            session.add(product)
            session.commit()
            product.is_deleted = True
            session.commit()

        entry = store.all()[-1]
        assert entry.action == "SoftDelete"
        assert entry.old_values_dict() == {"is_deleted": False}
        assert entry.new_values_dict() == {"is_deleted": True}

    def test_delete_after_commit(self, audited_sessions):
        """The old state of an expired entity is read back in full."""
        session_factory, store = audited_sessions

        with session_factory() as session:
            product = Product(name="Test Product", price=Decimal("9.99"))
            session.add(product)
            session.commit()
            session.delete(product)
            session.commit()

        create, delete = store.all()
        assert delete.action == "Delete"
        assert delete.entity_id == create.entity_id
        old = delete.old_values_dict()
        assert old["id"] == int(create.entity_id)
        assert old["name"] == "Test Product"
        assert old["price"] == 9.99

    def test_reassigning_stored_value_produces_nothing(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            product = Product(name="Test Product", price=Decimal("9.99"))
            session.add(product)
            session.commit()
            product.name = "Test Product"
            session.commit()

        assert [e.action for e in store.all()] == ["Create"]


class TestConfiguration:
    """Options that suppress or trim entries."""

    def test_disabled_logging_yields_nothing(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(AuditOptions(enable_automatic_logging=False))

        pid = add_product(session_factory)
        with session_factory() as session:
            product = session.get(Product, pid)
            product.price = Decimal("1")
            session.commit()
        with session_factory() as session:
            session.delete(session.get(Product, pid))
            session.commit()

        assert len(store) == 0

    def test_excluded_entity_type(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(
            AuditOptions(excluded_entity_types={Setting})
        )

        with session_factory() as session:
            session.add(Setting(key="theme", value="dark"))
            session.add(Product(name="P", price=Decimal("1")))
            session.commit()

        assert [e.entity_name for e in store.all()] == ["Product"]

    def test_excluded_entity_name(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(
            AuditOptions(excluded_entity_names={"Setting"})
        )

        with session_factory() as session:
            session.add(Setting(key="theme", value="dark"))
            session.commit()

        assert len(store) == 0

    def test_excluded_property_is_stripped(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(
            AuditOptions(excluded_properties={"password_hash"})
        )

        with session_factory() as session:
            customer = Customer(name="Ann", email="ann@example.com", password_hash="secret")
            session.add(customer)
            session.commit()
            customer.password_hash = "rotated"
            customer.email = "ann@example.org"
            session.commit()

        create, update = store.all()
        assert "password_hash" not in create.new_values_dict()
        assert update.old_values_dict() == {"email": "ann@example.com"}
        assert update.new_values_dict() == {"email": "ann@example.org"}

    def test_only_excluded_property_changed(self, make_audited_sessions):
        """The entry is still written, with empty value maps."""
        session_factory, store = make_audited_sessions(
            AuditOptions(excluded_properties={"password_hash"})
        )

        with session_factory() as session:
            customer = Customer(name="Ann", email="ann@example.com", password_hash="secret")
            session.add(customer)
            session.commit()
            customer.password_hash = "rotated"
            session.commit()

        update = store.all()[-1]
        assert update.action == "Update"
        assert update.old_values_dict() == {}
        assert update.new_values_dict() == {}

    def test_user_and_tenant_resolvers(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(
            AuditOptions(user_id_resolver=lambda: "alice", tenant_id_resolver=lambda: "acme")
        )

        add_product(session_factory)

        entry = store.all()[0]
        assert entry.changed_by == "alice"
        assert entry.tenant_id == "acme"

    def test_missing_user_falls_back_to_system(self, make_audited_sessions):
        session_factory, store = make_audited_sessions(AuditOptions(user_id_resolver=lambda: None))

        add_product(session_factory)

        assert store.all()[0].changed_by == "System"
        assert store.all()[0].tenant_id is None


class TestKeys:
    def test_composite_key_joined(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(OrderLine(order_id=7, line_no=2, quantity=3))
            session.commit()

        assert store.all()[0].entity_id == "7_2"

    def test_string_key(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Setting(key="theme", value="dark"))
            session.commit()

        assert store.all()[0].entity_id == "theme"

    def test_registered_key_extractor(self, audited_sessions):
        from audittrail.audit.registry import entity_registry

        entity_registry.register(Setting, key=lambda s: f"setting:{s.key}")
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Setting(key="theme", value="dark"))
            session.commit()

        assert store.all()[0].entity_id == "setting:theme"


class TestTransactionOutcome:
    """Only committed work is audited."""

    def test_rollback_discards_entries(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Product(name="Test Product", price=Decimal("9.99")))
            session.flush()
            session.rollback()

        assert len(store) == 0

    def test_close_without_commit_discards_entries(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Product(name="Test Product", price=Decimal("9.99")))
            session.flush()

        assert len(store) == 0

    def test_failed_commit_discards_entries(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Setting(key="theme", value="dark"))
            session.commit()

        with pytest.raises(IntegrityError):
            with session_factory() as session:
                session.add(Product(name="Flushed", price=Decimal("1")))
                session.flush()
                session.add(Setting(key="theme", value="light"))
                session.commit()

        assert [e.entity_name for e in store.all()] == ["Setting"]

    def test_session_usable_after_rollback(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Product(name="Discarded", price=Decimal("1")))
            session.flush()
            session.rollback()

            session.add(Product(name="Kept", price=Decimal("2")))
            session.commit()

        entries = store.all()
        assert len(entries) == 1
        assert entries[0].new_values_dict()["name"] == "Kept"

    def test_savepoint_rollback_drops_its_entries(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Product(name="Kept", price=Decimal("1")))
            session.flush()

            nested = session.begin_nested()
            session.add(Product(name="RolledBack", price=Decimal("2")))
            session.flush()
            nested.rollback()

            session.commit()

        assert [e.new_values_dict()["name"] for e in store.all()] == ["Kept"]

    def test_inner_savepoint_rollback_keeps_outer_savepoint(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Product(name="Outer", price=Decimal("1")))
            session.flush()

            with session.begin_nested():
                session.add(Product(name="Kept", price=Decimal("2")))
                session.flush()

                inner = session.begin_nested()
                session.add(Product(name="RolledBack", price=Decimal("3")))
                session.flush()
                inner.rollback()

            session.commit()

        assert [e.new_values_dict()["name"] for e in store.all()] == ["Outer", "Kept"]

    def test_released_savepoint_waits_for_outer_commit(self, audited_sessions):
        session_factory, store = audited_sessions

        with session_factory() as session:
            session.add(Product(name="Outer", price=Decimal("1")))
            session.flush()

            with session.begin_nested():
                session.add(Product(name="Inner", price=Decimal("2")))

            assert len(store) == 0
            session.commit()

        assert [e.new_values_dict()["name"] for e in store.all()] == ["Outer", "Inner"]


class TestPersistenceFailure:
    """A failed audit insert surfaces after the business commit is complete."""

    def test_session_usable_after_failed_audit_insert(self, make_audited_sessions):
        store, calls = failing_store(failures=1)
        session_factory, _ = make_audited_sessions(store=store)

        with session_factory() as session:
            session.add(Product(name="First", price=Decimal("1")))
            with pytest.raises(AuditPersistenceError):
                session.commit()

            session.add(Product(name="Second", price=Decimal("2")))
            session.commit()

        assert calls["n"] == 2
        assert [e.new_values_dict()["name"] for e in store.all()] == ["Second"]
        with session_factory() as session:
            assert session.execute(select(func.count()).select_from(Product)).scalar_one() == 2

    def test_failure_can_be_logged_only(self, make_audited_sessions):
        store, _ = failing_store(failures=1)
        session_factory, _ = make_audited_sessions(
            AuditOptions(raise_on_persist_failure=False), store=store
        )

        add_product(session_factory, name="First")
        add_product(session_factory, name="Second")

        assert [e.new_values_dict()["name"] for e in store.all()] == ["Second"]


class TestConcurrency:
    """Sessions sharing one interceptor keep separate batches."""

    def test_interleaved_sessions(self, audited_sessions, tmp_path):
        session_factory, store = audited_sessions
        # SQLite allows one writer per file, so the second session writes elsewhere
        other_engine = create_engine(f"sqlite:///{tmp_path / 'other.db'}")
        BusinessBase.metadata.create_all(other_engine)

        first = session_factory()
        second = session_factory(bind=other_engine)
        try:
            first.add(Product(name="First", price=Decimal("1")))
            first.flush()
            second.add(Product(name="Second", price=Decimal("2")))
            second.flush()

            second.rollback()
            first.commit()
        finally:
            first.close()
            second.close()
            other_engine.dispose()

        entries = store.all()
        assert len(entries) == 1
        assert entries[0].new_values_dict()["name"] == "First"

    def test_threads_do_not_cross_talk(self, make_audited_sessions):
        local = threading.local()
        session_factory, store = make_audited_sessions(
            AuditOptions(tenant_id_resolver=lambda: getattr(local, "tenant", None))
        )

        def work(tenant: str) -> None:
            local.tenant = tenant
            for i in range(5):
                add_product(session_factory, name=f"{tenant}-{i}")

        tenants = ["t1", "t2", "t3", "t4"]
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(work, tenants))

        entries = store.all()
        assert len(entries) == 20
        for entry in entries:
            assert entry.new_values_dict()["name"].startswith(f"{entry.tenant_id}-")


class TestSqlStoreIntegration:
    def test_entries_land_in_audit_table(self, make_audited_sessions, sql_store):
        session_factory, store = make_audited_sessions(store=sql_store)

        pid = add_product(session_factory)
        with session_factory() as session:
            session.get(Product, pid).price = Decimal("19.99")
            session.commit()

        history = store.find(AuditQuery(entity_name="Product", entity_id=str(pid)))
        assert [e.action for e in history] == ["Update", "Create"]
        assert history[0].old_values_dict() == {"price": 9.99}
