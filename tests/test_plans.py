"""
Test suite for the installment plan lifecycle

Tests plan creation (figures, schedule, atomicity), previews, the plan status
machine, listing and the rebuilding of stale aggregates from entry state.
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import patch

from installment_engine.amortization import compute_installment_amount
from installment_engine.audit import AuditTrail, AuditEventType
from installment_engine.directory import StorageCustomerDirectory, StorageProductCatalog
from installment_engine.errors import NotFoundError, ValidationError, ConflictError
from installment_engine.plans import (
    InstallmentPlan, InstallmentPlanManager, PlanStatus, PlanAggregates,
    can_transition, derive_aggregates, quote_plan, transition
)
from installment_engine.schedule import EntryStatus
from installment_engine.storage import InMemoryStorage, SQLiteStorage


TODAY = date(2024, 1, 10)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def manager(storage, audit_trail):
    customers = StorageCustomerDirectory(storage)
    products = StorageProductCatalog(storage)
    customers.register_customer("c1", "Ayesha Khan", phone="0300-1234567", address="12 Mall Road")
    products.register_product("p1", "Refrigerator", Decimal('50000'), images=["/img/fridge.png"])
    return InstallmentPlanManager(storage, customers, products, audit_trail=audit_trail, clock=lambda: TODAY)


def create_reference_plan(manager, **overrides):
    params = dict(
        customer_id="c1",
        product_id="p1",
        down_payment=Decimal('5000'),
        interest_rate=Decimal('10'),
        tenure=6,
        start_date=date(2024, 1, 1)
    )
    params.update(overrides)
    return manager.create_plan(**params)


class TestPlanStatusMachine:
    """Test plan status values and transitions"""

    def test_allowed_transitions(self):
        assert can_transition(PlanStatus.ACTIVE, PlanStatus.COMPLETED)
        assert can_transition(PlanStatus.ACTIVE, PlanStatus.CANCELLED)
        assert can_transition(PlanStatus.ACTIVE, PlanStatus.DEFAULTED)
        assert can_transition(PlanStatus.DEFAULTED, PlanStatus.COMPLETED)

    def test_terminal_states(self):
        assert PlanStatus.COMPLETED.is_terminal
        assert PlanStatus.CANCELLED.is_terminal
        assert not PlanStatus.ACTIVE.is_terminal
        with pytest.raises(ValidationError):
            transition(PlanStatus.COMPLETED, PlanStatus.CANCELLED)
        with pytest.raises(ValidationError):
            transition(PlanStatus.CANCELLED, PlanStatus.ACTIVE)

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            PlanStatus.parse("closed")
        assert PlanStatus.parse("DEFAULTED") == PlanStatus.DEFAULTED


class TestPlanCreation:
    """Test creating installment plans"""

    def test_end_to_end_figures(self, manager):
        """50,000 product, 5,000 down, 10% over 6 months"""
        plan = create_reference_plan(manager)

        expected_emi = compute_installment_amount(Decimal('45000'), Decimal('10'), 6)
        assert plan.product_price == Decimal('50000.00')
        assert plan.financed_amount == Decimal('45000.00')
        assert plan.emi_amount == expected_emi
        assert plan.total_payable == Decimal('5000.00') + expected_emi * 6
        assert plan.total_interest == plan.total_payable - Decimal('50000.00')
        assert plan.status == PlanStatus.ACTIVE
        assert plan.paid_installments == 0
        assert plan.remaining_installments == 6
        assert plan.next_due_date == date(2024, 2, 1)
        assert plan.version == 1

    def test_schedule_is_generated_and_persisted(self, manager, storage):
        plan = create_reference_plan(manager)

        assert [e.installment_no for e in plan.schedule] == [1, 2, 3, 4, 5, 6]
        balances = [e.balance for e in plan.schedule]
        assert all(later <= earlier for earlier, later in zip(balances, balances[1:]))
        assert all(e.plan_id == plan.id for e in plan.schedule)

        assert storage.count("installment_plans") == 1
        assert storage.count("repayment_entries") == 6
        assert storage.exists("repayment_entries", f"{plan.id}:6")

    def test_initial_statuses_use_as_of(self, manager):
        plan = create_reference_plan(manager, as_of=date(2024, 4, 20))
        statuses = [e.status for e in plan.schedule]
        assert statuses == [
            EntryStatus.OVERDUE, EntryStatus.OVERDUE, EntryStatus.DUE,
            EntryStatus.UPCOMING, EntryStatus.UPCOMING, EntryStatus.UPCOMING
        ]

    def test_initial_statuses_default_to_clock(self, manager):
        plan = create_reference_plan(manager, start_date=date(2023, 11, 1))
        # Due Dec 2023 (overdue), Jan 2024 (due on the clock's month), then upcoming
        assert plan.schedule[0].status == EntryStatus.OVERDUE
        assert plan.schedule[1].status == EntryStatus.DUE
        assert plan.schedule[2].status == EntryStatus.UPCOMING

    def test_start_date_accepts_iso_string(self, manager):
        plan = create_reference_plan(manager, start_date="2024-03-15")
        assert plan.start_date == date(2024, 3, 15)
        assert plan.schedule[0].due_date == date(2024, 4, 15)

    def test_custom_finance_amount_replaces_price(self, manager):
        plan = create_reference_plan(manager, finance_amount=Decimal('40000'))

        assert plan.product_price == Decimal('50000.00')
        assert plan.finance_amount == Decimal('40000.00')
        assert plan.financed_amount == Decimal('35000.00')
        assert plan.total_interest == plan.total_payable - Decimal('40000.00')

    def test_zero_finance_amount_falls_back_to_price(self, manager):
        plan = create_reference_plan(manager, finance_amount=Decimal('0'))
        assert plan.financed_amount == Decimal('45000.00')

    def test_down_payment_above_price_is_accepted(self, manager):
        plan = create_reference_plan(manager, down_payment=Decimal('60000'), interest_rate=Decimal('0'))
        assert plan.financed_amount == Decimal('-10000.00')
        assert plan.status == PlanStatus.ACTIVE

    def test_missing_product_persists_nothing(self, manager, storage):
        with pytest.raises(NotFoundError) as exc_info:
            create_reference_plan(manager, product_id="missing")

        assert exc_info.value.entity == "product"
        assert storage.count("installment_plans") == 0
        assert storage.count("repayment_entries") == 0

    def test_missing_customer_persists_nothing(self, manager, storage):
        with pytest.raises(NotFoundError):
            create_reference_plan(manager, customer_id="nobody")
        assert storage.count("installment_plans") == 0

    @pytest.mark.parametrize("tenure", [0, -3])
    def test_invalid_tenure(self, manager, storage, tenure):
        with pytest.raises(ValidationError):
            create_reference_plan(manager, tenure=tenure)
        assert storage.count("installment_plans") == 0

    def test_malformed_start_date(self, manager):
        with pytest.raises(ValidationError):
            create_reference_plan(manager, start_date="01/02/2024")

    def test_failure_mid_write_rolls_back(self, manager, storage):
        """A crash while writing entries leaves neither plan nor entries behind"""
        original_save = storage.save
        calls = {"entries": 0}

        def failing_save(table, record_id, data):
            if table == "repayment_entries":
                calls["entries"] += 1
                if calls["entries"] == 4:
                    raise RuntimeError("disk full")
            return original_save(table, record_id, data)

        with patch.object(storage, "save", side_effect=failing_save):
            with pytest.raises(RuntimeError):
                create_reference_plan(manager)

        assert storage.count("installment_plans") == 0
        assert storage.count("repayment_entries") == 0

    def test_creation_is_audited(self, manager, audit_trail):
        plan = create_reference_plan(manager)
        events = audit_trail.get_events_for_entity("plan", plan.id)
        assert [e.event_type for e in events] == [AuditEventType.PLAN_CREATED]
        assert events[0].metadata["financed_amount"] == "45000.00"

    def test_sqlite_backend(self):
        storage = SQLiteStorage()
        customers = StorageCustomerDirectory(storage)
        products = StorageProductCatalog(storage)
        customers.register_customer("c1", "Ayesha Khan")
        products.register_product("p1", "Refrigerator", "50000")
        manager = InstallmentPlanManager(storage, customers, products, clock=lambda: TODAY)

        plan = create_reference_plan(manager)
        loaded = manager.get_plan(plan.id)

        assert loaded.emi_amount == plan.emi_amount
        assert [e.due_date for e in loaded.schedule] == [e.due_date for e in plan.schedule]
        storage.close()


class TestPreview:
    """Test plan quotes"""

    def test_preview_matches_created_plan(self, manager, storage):
        quote = manager.preview_plan(
            product_price="50000", down_payment="5000", interest_rate="10",
            tenure=6, start_date="2024-01-01", as_of=TODAY
        )
        assert storage.count("installment_plans") == 0

        plan = create_reference_plan(manager)
        assert quote.emi_amount == plan.emi_amount
        assert quote.total_payable == plan.total_payable
        assert quote.total_interest == plan.total_interest
        assert len(quote.schedule) == 6

    def test_preview_with_finance_amount(self):
        quote = quote_plan(Decimal('50000'), Decimal('0'), Decimal('0'), 10,
                           date(2024, 1, 1), as_of=TODAY, finance_amount=Decimal('20000'))
        assert quote.financed_amount == Decimal('20000.00')
        assert quote.emi_amount == Decimal('2000.00')
        assert quote.total_interest == Decimal('0.00')

    def test_preview_validates_tenure(self, manager):
        with pytest.raises(ValidationError):
            manager.preview_plan("1000", "0", "5", 0, "2024-01-01")


class TestPlanReads:
    """Test get and list operations"""

    def test_get_unknown_plan(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_plan("does-not-exist")

    def test_list_filters(self, manager, storage):
        StorageCustomerDirectory(storage).register_customer("c2", "Bilal Ahmed")
        first = create_reference_plan(manager)
        second = create_reference_plan(manager, customer_id="c2")
        manager.cancel_plan(second.id)

        assert {p.id for p in manager.list_plans()} == {first.id, second.id}
        assert [p.id for p in manager.list_plans(status="cancelled")] == [second.id]
        assert [p.id for p in manager.list_plans(status=PlanStatus.ACTIVE)] == [first.id]
        assert [p.id for p in manager.list_plans(customer_id="c1")] == [first.id]
        assert manager.list_plans(product_id="other") == []

    def test_list_rejects_unknown_status(self, manager):
        with pytest.raises(ValidationError):
            manager.list_plans(status="finished")

    def test_list_is_newest_first(self, manager):
        first = create_reference_plan(manager)
        second = create_reference_plan(manager)
        assert [p.id for p in manager.list_plans()] == [second.id, first.id]


class TestAggregates:
    """Test aggregate derivation and repair"""

    def test_derive_from_entries(self, manager):
        plan = create_reference_plan(manager)
        plan.schedule[0].status = EntryStatus.PAID
        plan.schedule[1].status = EntryStatus.PAID

        aggregates = derive_aggregates(plan.schedule, plan.tenure, plan.status)
        assert aggregates == PlanAggregates(2, 4, date(2024, 4, 1), PlanStatus.ACTIVE)

    def test_all_paid_completes(self, manager):
        plan = create_reference_plan(manager)
        for entry in plan.schedule:
            entry.status = EntryStatus.PAID

        aggregates = derive_aggregates(plan.schedule, plan.tenure, plan.status)
        assert aggregates.status == PlanStatus.COMPLETED
        assert aggregates.next_due_date is None
        assert aggregates.remaining_installments == 0

    def test_cancelled_plan_is_not_completed(self, manager):
        plan = create_reference_plan(manager)
        for entry in plan.schedule:
            entry.status = EntryStatus.PAID
        aggregates = derive_aggregates(plan.schedule, plan.tenure, PlanStatus.CANCELLED)
        assert aggregates.status == PlanStatus.CANCELLED

    def test_stale_aggregates_are_repaired_on_read(self, manager, storage, audit_trail):
        """An entry marked paid without a recompute is picked up on the next read"""
        plan = create_reference_plan(manager)
        entry = storage.load("repayment_entries", f"{plan.id}:1")
        entry["status"] = "paid"
        entry["paid_date"] = "2024-02-01"
        storage.save("repayment_entries", f"{plan.id}:1", entry)

        repaired = manager.get_plan(plan.id)

        assert repaired.paid_installments == 1
        assert repaired.remaining_installments == 5
        assert repaired.next_due_date == date(2024, 3, 1)
        assert storage.load("installment_plans", plan.id)["paid_installments"] == 1
        events = audit_trail.get_events_for_entity("plan", plan.id)
        assert events[-1].event_type == AuditEventType.PLAN_AGGREGATES_REPAIRED

    def test_snapshot_never_writes(self, manager, storage):
        plan = create_reference_plan(manager)
        record = storage.load("installment_plans", plan.id)
        record["paid_installments"] = 3
        storage.save("installment_plans", plan.id, record)

        snapshot = manager.snapshot()
        assert snapshot[0].paid_installments == 3
        assert storage.load("installment_plans", plan.id)["paid_installments"] == 3

    def test_recompute_plan(self, manager, storage):
        plan = create_reference_plan(manager)
        record = storage.load("installment_plans", plan.id)
        record["remaining_installments"] = 0
        storage.save("installment_plans", plan.id, record)

        assert manager.recompute_plan(plan.id).remaining_installments == 6

    def test_stale_version_conflicts(self, manager):
        plan = create_reference_plan(manager)
        stale = manager.load_plan(plan.id)
        manager.cancel_plan(plan.id)

        with pytest.raises(ConflictError):
            manager.recompute(stale)


class TestCancelAndDefault:
    """Test cancellation and the external default trigger"""

    def test_cancel_keeps_entries(self, manager, storage, audit_trail):
        plan = create_reference_plan(manager)
        cancelled = manager.cancel_plan(plan.id)

        assert cancelled.status == PlanStatus.CANCELLED
        assert storage.count("repayment_entries") == 6
        assert manager.get_plan(plan.id).status == PlanStatus.CANCELLED
        assert audit_trail.get_events_for_entity("plan", plan.id)[-1].event_type == AuditEventType.PLAN_CANCELLED

    def test_cancel_twice_is_a_no_op(self, manager):
        plan = create_reference_plan(manager)
        first = manager.cancel_plan(plan.id)
        second = manager.cancel_plan(plan.id)
        assert second.version == first.version

    def test_cancel_unknown_plan(self, manager):
        with pytest.raises(NotFoundError):
            manager.cancel_plan("nope")

    def test_mark_defaulted(self, manager):
        plan = create_reference_plan(manager)
        defaulted = manager.mark_defaulted(plan.id, reason="3 missed installments")
        assert defaulted.status == PlanStatus.DEFAULTED
        assert manager.get_plan(plan.id).status == PlanStatus.DEFAULTED

    def test_cannot_default_a_cancelled_plan(self, manager):
        plan = create_reference_plan(manager)
        manager.cancel_plan(plan.id)
        with pytest.raises(ValidationError):
            manager.mark_defaulted(plan.id)


class TestPlanRecord:
    """Test plan persistence helpers"""

    def test_storage_dict_round_trip(self, manager):
        plan = create_reference_plan(manager, finance_amount=Decimal('48000'))
        data = plan.to_dict()

        assert "schedule" not in data
        assert data["status"] == "active"
        assert data["next_due_date"] == "2024-02-01"

        restored = InstallmentPlan.from_dict(data)
        restored.schedule = plan.schedule
        assert restored == plan

    def test_empty_next_due_date_round_trips_as_none(self, manager):
        plan = create_reference_plan(manager)
        plan.next_due_date = None
        data = plan.to_dict()
        assert data["next_due_date"] == ""
        assert InstallmentPlan.from_dict(data).next_due_date is None
