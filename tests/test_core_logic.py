"""Unit tests for the business logic layer over an in-memory workbook."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta

import pytest

from shop_ledger import core_logic, data_manager
from shop_ledger.constants import RecordKind, TransactionType


def _record(context, customer_id, transaction_type, *items, date="2024-05-01", timestamp=None):
    command = core_logic.TransactionCommand(
        customer_id=customer_id,
        transaction_type=transaction_type,
        date=date,
        items=[core_logic.ItemCommand(name=name, quantity=qty, price=price) for name, qty, price in items],
        timestamp=timestamp,
    )
    return core_logic.add_transaction(context, command)


def _stored_rows(context, kind):
    return list(data_manager.iter_records(context.workbook, kind))


# ---------------------------------------------------------------------------
# Balance rules
# ---------------------------------------------------------------------------


def test_debit_credit_delete_scenario(context, customer):
    """Debit 2x50, credit 1x40, then delete the debit: 100 -> 60 -> -40."""

    debit = _record(context, customer.customer_id, TransactionType.DEBIT, ("Rice", 2, 50))
    assert debit.total_amount == pytest.approx(100.0)
    assert core_logic.get_customer(context, customer.customer_id).balance == pytest.approx(100.0)

    credit = _record(context, customer.customer_id, TransactionType.CREDIT, ("Payment", 1, 40))
    assert credit.total_amount == pytest.approx(40.0)
    assert core_logic.get_customer(context, customer.customer_id).balance == pytest.approx(60.0)

    core_logic.delete_transaction(context, debit.transaction_id)
    assert core_logic.get_customer(context, customer.customer_id).balance == pytest.approx(-40.0)
    stored = data_manager.get_record(context.workbook, RecordKind.CUSTOMERS, customer.customer_id)
    assert stored.balance == pytest.approx(-40.0)


def test_balance_matches_ledger_after_mixed_operations(context, customer):
    other = core_logic.add_customer(context, name="Bala Stores", email="bala@example.com")
    recorded = [
        _record(context, customer.customer_id, "debit", ("Sugar", 3, 42), ("Salt", 1, 20)),
        _record(context, other.customer_id, "debit", ("Oil", 2, 150)),
        _record(context, customer.customer_id, "credit", ("Cash", 1, 75.5)),
        _record(context, customer.customer_id, "debit", ("Tea", 100, 1.5)),
        _record(context, other.customer_id, "credit", ("UPI", 1, 500)),
    ]
    core_logic.delete_transaction(context, recorded[0].transaction_id)
    core_logic.delete_transaction(context, recorded[4].transaction_id)

    for row in (customer, other):
        remaining = core_logic.list_customer_transactions(context, row.customer_id)
        expected = sum(t.total_amount for t in remaining if t.transaction_type == "debit") - sum(
            t.total_amount for t in remaining if t.transaction_type == "credit"
        )
        assert core_logic.get_customer(context, row.customer_id).balance == pytest.approx(expected)
    assert core_logic.check_balances(context) == {}


def test_add_then_delete_restores_balance(context, customer):
    _record(context, customer.customer_id, "debit", ("Dal", 1, 99.99))
    before = core_logic.get_customer(context, customer.customer_id).balance

    added = _record(context, customer.customer_id, "credit", ("Cash", 1, 12.34))
    core_logic.delete_transaction(context, added.transaction_id)

    assert core_logic.get_customer(context, customer.customer_id).balance == pytest.approx(before)


def test_add_transaction_captures_snapshot_fields(context, customer, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 5, 1, 10, 30, tzinfo=UTC))

    transaction = _record(context, customer.customer_id, "debit", ("Rice", 2, 50), ("Jaggery", 0.5, 65))

    assert transaction.customer_name == "Asha Traders"
    assert transaction.total_amount == pytest.approx(132.5)
    assert transaction.created_at == moment.isoformat()
    assert len({item.item_id for item in transaction.items}) == 2
    assert data_manager.get_record(context.workbook, RecordKind.TRANSACTIONS, transaction.transaction_id) == transaction


def test_renaming_customer_keeps_transaction_snapshot(context, customer):
    transaction = _record(context, customer.customer_id, "debit", ("Rice", 1, 50))

    core_logic.update_customer(context, customer.customer_id, name="Asha & Sons")

    assert core_logic.get_transaction(context, transaction.transaction_id).customer_name == "Asha Traders"


def test_add_transaction_rejects_unknown_customer(context, customer):
    _record(context, customer.customer_id, "debit", ("Rice", 1, 50))
    before_transactions = _stored_rows(context, RecordKind.TRANSACTIONS)
    before_customers = _stored_rows(context, RecordKind.CUSTOMERS)

    with pytest.raises(core_logic.NotFoundError):
        _record(context, "no-such-customer", "debit", ("Rice", 1, 50))

    assert _stored_rows(context, RecordKind.TRANSACTIONS) == before_transactions
    assert _stored_rows(context, RecordKind.CUSTOMERS) == before_customers
    assert len(core_logic.list_transactions(context)) == 1


@pytest.mark.parametrize(
    "items",
    [
        [],
        [("Rice", 0, 50)],
        [("Rice", -1, 50)],
        [("Rice", 1, -0.01)],
        [("", 1, 10)],
        [("Rice", "lots", 10)],
        [("Rice", float("nan"), 10)],
    ],
)
def test_add_transaction_rejects_invalid_items(context, customer, items):
    with pytest.raises(core_logic.ValidationError):
        _record(context, customer.customer_id, "debit", *items)

    assert _stored_rows(context, RecordKind.TRANSACTIONS) == []
    assert core_logic.get_customer(context, customer.customer_id).balance == 0.0


def test_add_transaction_rejects_unknown_type(context, customer):
    with pytest.raises(core_logic.ValidationError):
        _record(context, customer.customer_id, "refund", ("Rice", 1, 10))


def test_zero_priced_items_are_allowed(context, customer):
    transaction = _record(context, customer.customer_id, "debit", ("Free sample", 1, 0))

    assert transaction.total_amount == 0.0


def test_delete_transaction_without_customer_skips_reversal(context, customer):
    transaction = _record(context, customer.customer_id, "debit", ("Rice", 1, 50))
    # simulate an orphan left behind by an interrupted cascade
    context.projection.customers.pop(customer.customer_id)
    data_manager.delete_record(context.workbook, RecordKind.CUSTOMERS, customer.customer_id)

    core_logic.delete_transaction(context, transaction.transaction_id)

    assert core_logic.list_transactions(context) == []
    assert _stored_rows(context, RecordKind.TRANSACTIONS) == []


# ---------------------------------------------------------------------------
# Deletes and cascades
# ---------------------------------------------------------------------------


def test_delete_customer_cascades_to_transactions(context, customer):
    other = core_logic.add_customer(context, name="Bala Stores", email="bala@example.com")
    for _ in range(3):
        _record(context, customer.customer_id, "debit", ("Rice", 1, 50))
    kept = _record(context, other.customer_id, "debit", ("Oil", 1, 150))

    core_logic.delete_customer(context, customer.customer_id)

    stored = _stored_rows(context, RecordKind.TRANSACTIONS)
    assert [row.transaction_id for row in stored] == [kept.transaction_id]
    assert not any(row.customer_id == customer.customer_id for row in core_logic.list_transactions(context))
    assert [row.customer_id for row in core_logic.list_customers(context)] == [other.customer_id]
    assert core_logic.get_customer(context, other.customer_id).balance == pytest.approx(150.0)


@pytest.mark.parametrize(
    "operation",
    [core_logic.delete_customer, core_logic.delete_product, core_logic.delete_transaction],
)
def test_deleting_unknown_ids_is_a_noop(context, customer, operation):
    _record(context, customer.customer_id, "debit", ("Rice", 1, 50))
    core_logic.add_product(context, name="Sugar", category="Sugar & Sweeteners", price=42)
    snapshot = {kind: _stored_rows(context, kind) for kind in RecordKind}

    operation(context, "does-not-exist")

    assert {kind: _stored_rows(context, kind) for kind in RecordKind} == snapshot


def test_delete_customer_is_all_or_nothing(context, customer, monkeypatch):
    first = _record(context, customer.customer_id, "debit", ("Rice", 1, 50))
    second = _record(context, customer.customer_id, "debit", ("Dal", 1, 90))
    real_delete = data_manager.delete_record

    def _flaky_delete(workbook, kind, key):
        if key == second.transaction_id:
            raise data_manager.StorageFailure("sheet locked")
        return real_delete(workbook, kind, key)

    monkeypatch.setattr(data_manager, "delete_record", _flaky_delete)

    with pytest.raises(data_manager.StorageFailure) as excinfo:
        core_logic.delete_customer(context, customer.customer_id)

    assert not isinstance(excinfo.value, core_logic.PartialCommit)
    assert data_manager.get_record(context.workbook, RecordKind.CUSTOMERS, customer.customer_id) is not None
    stored_ids = {row.transaction_id for row in _stored_rows(context, RecordKind.TRANSACTIONS)}
    assert stored_ids == {first.transaction_id, second.transaction_id}
    assert customer.customer_id in context.projection.customers


# ---------------------------------------------------------------------------
# Atomicity and failure reporting
# ---------------------------------------------------------------------------


def test_failed_balance_update_rolls_back_transaction_insert(context, customer, monkeypatch):
    def _fail_put(*_args, **_kwargs):
        raise data_manager.StorageFailure("write refused")

    monkeypatch.setattr(data_manager, "put_record", _fail_put)

    with pytest.raises(data_manager.StorageFailure) as excinfo:
        _record(context, customer.customer_id, "debit", ("Rice", 1, 50))

    assert not isinstance(excinfo.value, core_logic.PartialCommit)
    assert _stored_rows(context, RecordKind.TRANSACTIONS) == []
    assert core_logic.list_transactions(context) == []
    assert core_logic.get_customer(context, customer.customer_id).balance == 0.0


def test_unrecoverable_failure_reports_partial_commit(context, customer, monkeypatch):
    def _fail(*_args, **_kwargs):
        raise data_manager.StorageFailure("write refused")

    monkeypatch.setattr(data_manager, "put_record", _fail)
    monkeypatch.setattr(data_manager, "delete_record", _fail)

    with pytest.raises(core_logic.PartialCommit) as excinfo:
        _record(context, customer.customer_id, "debit", ("Rice", 2, 50))

    error = excinfo.value
    assert error.operation == "add_transaction"
    assert len(error.completed) == 1
    assert error.completed[0].startswith("add transactions ")
    # the projection only reflects committed operations
    assert core_logic.list_transactions(context) == []

    monkeypatch.undo()
    core_logic.load_projection(context)
    assert core_logic.check_balances(context) == {customer.customer_id: (0.0, 100.0)}

    corrected = core_logic.reconcile_balances(context)

    assert [row.balance for row in corrected] == [pytest.approx(100.0)]
    assert core_logic.check_balances(context) == {}


def test_save_failure_rolls_back_in_memory_writes(settings, monkeypatch):
    context = core_logic.RuntimeContext(
        settings=data_manager.ConfigSettings(
            data_file=settings.data_file,
            business_name="Test Shop",
            autosave=True,
            seed_payment_terms=False,
        ),
        workbook=data_manager.create_workbook(),
    )

    def _fail_save(*_args, **_kwargs):
        raise data_manager.StorageFailure("disk full")

    monkeypatch.setattr(data_manager, "save_workbook", _fail_save)

    with pytest.raises(data_manager.StorageFailure):
        core_logic.add_customer(context, name="Asha", email="asha@example.com")

    assert _stored_rows(context, RecordKind.CUSTOMERS) == []
    assert core_logic.list_customers(context) == []


def test_autosave_persists_each_operation(settings):
    context = core_logic.RuntimeContext(
        settings=data_manager.ConfigSettings(
            data_file=settings.data_file,
            business_name="Test Shop",
            autosave=True,
            seed_payment_terms=False,
        ),
        workbook=data_manager.create_workbook(),
    )
    customer = core_logic.add_customer(context, name="Asha", email="asha@example.com")
    _record(context, customer.customer_id, "debit", ("Rice", 2, 50))

    reloaded = data_manager.open_workbook(settings.data_file)

    stored = data_manager.get_record(reloaded, RecordKind.CUSTOMERS, customer.customer_id)
    assert stored.balance == pytest.approx(100.0)
    assert len(list(data_manager.iter_records(reloaded, RecordKind.TRANSACTIONS))) == 1


# ---------------------------------------------------------------------------
# Customers, products and payment terms
# ---------------------------------------------------------------------------


def test_add_customer_starts_at_zero(context):
    customer = core_logic.add_customer(
        context, name="  Asha  ", email="asha@example.com", phone="555", address="Market Road"
    )

    assert customer.balance == 0.0
    assert customer.name == "Asha"
    assert customer.payment_term_id is None
    assert _stored_rows(context, RecordKind.CUSTOMERS) == [customer]


@pytest.mark.parametrize("field_values", [{"name": ""}, {"email": "   "}])
def test_add_customer_requires_name_and_email(context, field_values):
    payload = {"name": "Asha", "email": "asha@example.com", **field_values}
    with pytest.raises(core_logic.ValidationError):
        core_logic.add_customer(context, **payload)
    assert core_logic.list_customers(context) == []


def test_add_customer_rejects_unknown_payment_term(context):
    with pytest.raises(core_logic.NotFoundError):
        core_logic.add_customer(context, name="Asha", email="a@example.com", payment_term_id="nope")
    assert _stored_rows(context, RecordKind.CUSTOMERS) == []


def test_update_customer_never_accepts_balance(context, customer):
    with pytest.raises(core_logic.ValidationError):
        core_logic.update_customer(context, customer.customer_id, balance=1_000_000.0)

    assert core_logic.get_customer(context, customer.customer_id).balance == 0.0


def test_update_customer_edits_contact_and_term(context, customer):
    term = core_logic.add_payment_term(context, name="Monthly", days=30)
    _record(context, customer.customer_id, "debit", ("Rice", 1, 50))

    updated = core_logic.update_customer(
        context, customer.customer_id, phone="555-0199", payment_term_id=term.payment_term_id
    )

    assert updated.phone == "555-0199"
    assert updated.payment_term_id == term.payment_term_id
    assert updated.balance == pytest.approx(50.0)
    assert data_manager.get_record(context.workbook, RecordKind.CUSTOMERS, customer.customer_id) == updated

    cleared = core_logic.update_customer(context, customer.customer_id, payment_term_id="")
    assert cleared.payment_term_id is None


def test_update_customer_with_unstorable_text_changes_nothing(context, customer):
    """A control character in any field is rejected before the row is touched."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.update_customer(context, customer.customer_id, name="Renamed", phone="555\x01")

    stored = data_manager.get_record(context.workbook, RecordKind.CUSTOMERS, customer.customer_id)
    assert stored == core_logic.get_customer(context, customer.customer_id)
    assert stored.name == "Asha Traders"


def test_storage_rejection_inside_update_keeps_store_and_projection_aligned(context, customer):
    """Text that slips past validation is refused by the store without a half-written row."""

    updated = dataclasses.replace(customer, name="Renamed", address="Market\x01Road")

    with pytest.raises(data_manager.StorageFailure):
        with core_logic.unit_of_work(context, "update_customer") as uow:
            uow.put(RecordKind.CUSTOMERS, updated)

    stored = data_manager.get_record(context.workbook, RecordKind.CUSTOMERS, customer.customer_id)
    assert stored == core_logic.get_customer(context, customer.customer_id) == customer


@pytest.mark.parametrize(
    "fields",
    [{"name": "Asha\x07"}, {"email": "asha\x00@example.com"}, {"address": "Market\x1fRoad"}],
)
def test_add_customer_rejects_unstorable_text(context, fields):
    payload = {"name": "Asha", "email": "asha@example.com", **fields}

    with pytest.raises(core_logic.ValidationError):
        core_logic.add_customer(context, **payload)

    assert _stored_rows(context, RecordKind.CUSTOMERS) == []
    assert core_logic.list_customers(context) == []


def test_add_transaction_rejects_unstorable_item_name(context, customer):
    with pytest.raises(core_logic.ValidationError):
        _record(context, customer.customer_id, "debit", ("Rice\x02", 1, 50))

    assert _stored_rows(context, RecordKind.TRANSACTIONS) == []


def test_update_unknown_customer_raises_not_found(context):
    with pytest.raises(core_logic.NotFoundError):
        core_logic.update_customer(context, "missing", name="Ghost")


@pytest.mark.parametrize(
    "overrides",
    [{"price": 0}, {"price": -5}, {"name": ""}, {"category": "  "}],
)
def test_add_product_validation(context, overrides):
    payload = {"name": "Toor Dal", "category": "Pulses & Dals", "price": 120, **overrides}

    with pytest.raises(core_logic.ValidationError):
        core_logic.add_product(context, **payload)

    assert core_logic.list_products(context) == []
    assert _stored_rows(context, RecordKind.PRODUCTS) == []


def test_product_crud(context):
    product = core_logic.add_product(context, name="Mustard Oil", category="Oil & Ghee", price=180, unit="L")
    assert product.unit == "L"

    updated = core_logic.update_product(context, product.product_id, price="175.5")
    assert updated.price == pytest.approx(175.5)
    assert data_manager.get_record(context.workbook, RecordKind.PRODUCTS, product.product_id) == updated

    with pytest.raises(core_logic.ValidationError):
        core_logic.update_product(context, product.product_id, price=0)
    with pytest.raises(core_logic.ValidationError):
        core_logic.update_product(context, product.product_id, created_at="yesterday")

    core_logic.delete_product(context, product.product_id)
    assert core_logic.list_products(context) == []
    assert _stored_rows(context, RecordKind.PRODUCTS) == []


def test_add_payment_term_validation(context):
    term = core_logic.add_payment_term(context, name="Fortnightly", days=14)
    assert core_logic.list_payment_terms(context) == [term]

    for days in (-1, 7.5, True):
        with pytest.raises(core_logic.ValidationError):
            core_logic.add_payment_term(context, name="Bad", days=days)
    with pytest.raises(core_logic.ValidationError):
        core_logic.add_payment_term(context, name=" ", days=7)


def test_seed_default_payment_terms_only_when_empty(context):
    seeded = core_logic.seed_default_payment_terms(context)

    assert [(term.name, term.days) for term in seeded] == [("Weekly", 7), ("Monthly", 30), ("6 Months", 180)]
    assert core_logic.seed_default_payment_terms(context) == []
    assert len(_stored_rows(context, RecordKind.PAYMENT_TERMS)) == 3


# ---------------------------------------------------------------------------
# Queries and reports
# ---------------------------------------------------------------------------


def test_list_customer_transactions_newest_first(context, customer):
    start = datetime(2024, 5, 1, tzinfo=UTC)
    ids = [
        _record(context, customer.customer_id, "debit", ("Rice", 1, 10), timestamp=start + timedelta(hours=offset))
        .transaction_id
        for offset in (2, 0, 1)
    ]

    ordered = core_logic.list_customer_transactions(context, customer.customer_id)

    assert [row.transaction_id for row in ordered] == [ids[0], ids[2], ids[1]]


def test_dashboard_summary(context, customer):
    other = core_logic.add_customer(context, name="Bala Stores", email="bala@example.com")
    _record(context, customer.customer_id, "debit", ("Rice", 2, 50))
    _record(context, other.customer_id, "debit", ("Oil", 1, 300))
    _record(context, other.customer_id, "credit", ("Cash", 1, 120))

    summary = core_logic.calculate_dashboard_summary(context, limit=2)

    assert summary["total_customers"] == 2
    assert summary["total_balance"] == pytest.approx(280.0)
    assert summary["total_debits"] == pytest.approx(400.0)
    assert summary["total_credits"] == pytest.approx(120.0)
    assert len(summary["recent_transactions"]) == 2
    assert [row.customer_id for row in summary["top_customers"]] == [other.customer_id, customer.customer_id]


def test_get_lookups_raise_not_found(context):
    for lookup in (
        core_logic.get_customer,
        core_logic.get_product,
        core_logic.get_transaction,
        core_logic.get_payment_term,
    ):
        with pytest.raises(core_logic.NotFoundError):
            lookup(context, "missing")
