"""Business logic layer for the shop ledger.

This module owns the rules that keep customer balances, the transaction
ledger and the workbook consistent. It consumes the Data Access Layer (DAL)
for all I/O and keeps an in-memory projection of every record kind on the
:class:`RuntimeContext`, so callers never touch the workbook directly.

Every mutating operation runs inside a unit of work. Each workbook write made
through the unit registers a compensating action; the workbook is saved once
when the block completes, and any failure replays the compensations so the
workbook matches the last saved file again. The projection is only updated
after the unit of work committed.
"""

from __future__ import annotations

import math
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.workbook import Workbook

from . import attach_log_file, data_manager, log
from .constants import DEFAULT_PAYMENT_TERMS, SCHEMA_VERSION, RecordKind, TransactionType


BALANCE_TOLERANCE = 1e-6

EDITABLE_CUSTOMER_FIELDS = frozenset({"name", "email", "phone", "address", "payment_term_id"})
EDITABLE_PRODUCT_FIELDS = frozenset({"name", "category", "unit", "price"})


class LedgerError(Exception):
    """Base class for failures reported by domain operations."""


class NotFoundError(LedgerError):
    """Raised when a referenced customer, product, term or transaction is unknown."""


class ValidationError(LedgerError, ValueError):
    """Raised when caller-supplied data violates a field constraint."""


class PartialCommit(data_manager.StorageFailure):
    """Raised when an operation failed midway and could not be rolled back.

    ``completed`` lists the writes that were applied and remain in the
    workbook, so an operator can reconcile them (see :func:`reconcile_balances`).
    """

    def __init__(self, operation: str, completed: Sequence[str], cause: BaseException) -> None:
        self.operation = operation
        self.completed = tuple(completed)
        self.cause = cause
        super().__init__(
            f"{operation} failed after {len(self.completed)} write(s) and could not be "
            f"rolled back: {cause}"
        )


@dataclass
class Projection:
    """Last-known full set of each record kind, keyed by identifier."""

    customers: Dict[str, data_manager.CustomerRow] = field(default_factory=dict)
    products: Dict[str, data_manager.ProductRow] = field(default_factory=dict)
    transactions: Dict[str, data_manager.TransactionRow] = field(default_factory=dict)
    payment_terms: Dict[str, data_manager.PaymentTermRow] = field(default_factory=dict)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook handle and the projection."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    projection: Projection = field(default_factory=Projection, repr=False, compare=False)


@dataclass(frozen=True)
class ItemCommand:
    """One freeform line item supplied when recording a transaction."""

    name: str
    quantity: float
    price: float


@dataclass(frozen=True)
class TransactionCommand:
    """User intent for recording a debit or credit against a customer."""

    customer_id: str
    transaction_type: Union[TransactionType, str]
    date: str
    items: Sequence[ItemCommand]
    timestamp: Optional[datetime] = None


class UnitOfWork:
    """Journal of workbook writes made by one domain operation."""

    def __init__(self, workbook: Workbook, operation: str) -> None:
        self.workbook = workbook
        self.operation = operation
        self.completed: List[str] = []
        self._undo: List[Callable[[], object]] = []

    def add(self, kind: RecordKind, record: data_manager.Record) -> None:
        key = data_manager.record_key(record)
        data_manager.add_record(self.workbook, kind, record)
        self.completed.append(f"add {kind.value} {key}")
        self._undo.append(lambda: data_manager.delete_record(self.workbook, kind, key))

    def put(self, kind: RecordKind, record: data_manager.Record) -> None:
        key = data_manager.record_key(record)
        previous = data_manager.put_record(self.workbook, kind, record)
        self.completed.append(f"put {kind.value} {key}")
        if previous is None:
            self._undo.append(lambda: data_manager.delete_record(self.workbook, kind, key))
        else:
            self._undo.append(lambda: data_manager.put_record(self.workbook, kind, previous))

    def delete(self, kind: RecordKind, key: str) -> Optional[data_manager.Record]:
        removed = data_manager.delete_record(self.workbook, kind, key)
        if removed is None:
            return None
        self.completed.append(f"delete {kind.value} {key}")
        self._undo.append(lambda: data_manager.add_record(self.workbook, kind, removed))
        return removed

    def rollback(self) -> None:
        """Apply the compensating actions newest first."""

        while self._undo:
            undo = self._undo.pop()
            undo()
            self.completed.pop()


@contextmanager
def unit_of_work(context: RuntimeContext, operation: str) -> Iterator[UnitOfWork]:
    """Run a block of workbook writes as one logical commit.

    On success the workbook is saved once (when ``AutoSave`` is on). On any
    failure the journal is rolled back and the original error re-raised. If
    the rollback itself fails after at least one write, :class:`PartialCommit`
    is raised instead.
    """

    uow = UnitOfWork(context.workbook, operation)
    try:
        yield uow
        if uow.completed and context.settings.autosave:
            persist_context(context)
    except Exception as exc:
        if not uow.completed:
            raise
        applied = list(uow.completed)
        try:
            uow.rollback()
        except Exception as rollback_exc:
            log.critical(
                "%s left the workbook inconsistent; rollback failed (%s). Applied writes: %s",
                operation,
                rollback_exc,
                "; ".join(uow.completed),
            )
            raise PartialCommit(operation, uow.completed, exc) from exc
        log.error("%s failed and %d write(s) were rolled back: %s", operation, len(applied), exc)
        raise
    if uow.completed:
        log.debug("%s committed: %s", operation, "; ".join(uow.completed))


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id() -> str:
    """Return a fresh random identifier for any record or line item."""

    return str(uuid.uuid4())


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration, open (or create) the workbook and fill the projection.

    The configuration file is located and parsed through the data layer. A
    missing workbook is created at the current schema version; an existing one
    is upgraded additively by :func:`ensure_schema_version`. The projection is
    then populated from a full scan of every record kind and, when enabled in
    the configuration, the default payment terms are seeded into an empty
    ``paymentTerms`` collection.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upwards
            from the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for domain operations.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        data_manager.StorageFailure: If the workbook cannot be read or saved.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    attach_log_file(settings.data_file.parent)

    if settings.data_file.exists():
        workbook = data_manager.open_workbook(settings.data_file)
    else:
        log.info("Workbook '%s' not found, creating a new ledger", settings.data_file)
        workbook = data_manager.create_workbook()
        data_manager.save_workbook(workbook, settings.data_file)

    context = RuntimeContext(settings=settings, workbook=workbook)
    ensure_schema_version(context)
    load_projection(context)
    if settings.seed_payment_terms:
        seed_default_payment_terms(context)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


def ensure_schema_version(context: RuntimeContext) -> int:
    """Upgrade the workbook layout to ``SCHEMA_VERSION`` when it is older.

    Upgrades only add sheets and indexes, so existing rows are preserved. The
    upgraded workbook is saved straight away when ``AutoSave`` is on.

    Returns:
        int: The schema version of the workbook after the check.

    Raises:
        data_manager.StorageFailure: If the workbook is newer than this
            release understands.
    """
    before = data_manager.get_schema_version(context.workbook)
    after = data_manager.upgrade_schema(context.workbook, target=SCHEMA_VERSION)
    if after != before:
        log.info("Workbook schema upgraded from %d to %d", before, after)
        if context.settings.autosave:
            persist_context(context)
    else:
        log.debug("Schema version %d validated", after)
    return after


def load_projection(context: RuntimeContext) -> Projection:
    """Replace the projection contents with a full scan of the workbook."""

    projection = context.projection
    workbook = context.workbook
    projection.customers = {
        row.customer_id: row for row in data_manager.iter_records(workbook, RecordKind.CUSTOMERS)
    }
    projection.products = {
        row.product_id: row for row in data_manager.iter_records(workbook, RecordKind.PRODUCTS)
    }
    projection.transactions = {
        row.transaction_id: row for row in data_manager.iter_records(workbook, RecordKind.TRANSACTIONS)
    }
    projection.payment_terms = {
        row.payment_term_id: row for row in data_manager.iter_records(workbook, RecordKind.PAYMENT_TERMS)
    }
    log.debug(
        "Loaded projection: %d customers, %d products, %d transactions, %d payment terms",
        len(projection.customers),
        len(projection.products),
        len(projection.transactions),
        len(projection.payment_terms),
    )
    return projection


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory workbook to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and rebuild the projection.

    Any unsaved modifications held by ``context`` are discarded. A new
    :class:`RuntimeContext` is returned; the old one should not be reused.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    refreshed = RuntimeContext(settings=context.settings, workbook=workbook)
    load_projection(refreshed)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return refreshed


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return every customer in store order."""
    return list(context.projection.customers.values())


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in store order."""
    return list(context.projection.products.values())


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return every transaction in store order.

    Callers that need chronological output should sort on ``created_at``.
    """
    return list(context.projection.transactions.values())


def list_payment_terms(context: RuntimeContext) -> List[data_manager.PaymentTermRow]:
    """Return every payment term in store order."""
    return list(context.projection.payment_terms.values())


def list_customer_transactions(context: RuntimeContext, customer_id: str) -> List[data_manager.TransactionRow]:
    """Return one customer's transactions, newest ``created_at`` first."""
    rows = [row for row in context.projection.transactions.values() if row.customer_id == customer_id]
    return sorted(rows, key=lambda row: row.created_at, reverse=True)


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer by id.

    Raises:
        NotFoundError: If ``customer_id`` is unknown.
    """
    try:
        return context.projection.customers[customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise NotFoundError(f"Unknown customer id: {customer_id}") from exc


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by id.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    try:
        return context.projection.products[product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}") from exc


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction by id.

    Raises:
        NotFoundError: If ``transaction_id`` is unknown.
    """
    try:
        return context.projection.transactions[transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}") from exc


def get_payment_term(context: RuntimeContext, payment_term_id: str) -> data_manager.PaymentTermRow:
    """Resolve a payment term by id.

    Raises:
        NotFoundError: If ``payment_term_id`` is unknown.
    """
    try:
        return context.projection.payment_terms[payment_term_id]
    except KeyError as exc:
        log.warning("Payment term lookup failed for id '%s'", payment_term_id)
        raise NotFoundError(f"Unknown payment term id: {payment_term_id}") from exc


def balance_contribution(transaction: data_manager.TransactionRow) -> float:
    """Signed effect of ``transaction`` on its customer's balance.

    Debits add the total, credits subtract it.
    """
    if transaction.transaction_type == TransactionType.CREDIT.value:
        return -transaction.total_amount
    return transaction.total_amount


def calculate_expected_balances(context: RuntimeContext) -> Dict[str, float]:
    """Derive every customer's balance from the transactions in the projection."""

    expected = {customer_id: 0.0 for customer_id in context.projection.customers}
    for transaction in context.projection.transactions.values():
        if transaction.customer_id in expected:
            expected[transaction.customer_id] += balance_contribution(transaction)
    return expected


def check_balances(context: RuntimeContext) -> Dict[str, Tuple[float, float]]:
    """Report customers whose stored balance drifts from the ledger.

    Returns:
        dict[str, tuple[float, float]]: ``customer_id`` mapped to
            ``(stored_balance, ledger_balance)`` for every drifted customer.
    """
    drift: Dict[str, Tuple[float, float]] = {}
    for customer_id, expected in calculate_expected_balances(context).items():
        stored = context.projection.customers[customer_id].balance
        if not math.isclose(stored, expected, abs_tol=BALANCE_TOLERANCE):
            drift[customer_id] = (stored, expected)
    if drift:
        log.warning("Balance drift detected for %d customer(s)", len(drift))
    return drift


def calculate_dashboard_summary(context: RuntimeContext, *, limit: int = 5) -> Dict[str, Any]:
    """Aggregate the headline figures shown on the dashboard.

    Returns:
        dict[str, Any]: ``total_customers``, ``total_balance``,
            ``total_debits``, ``total_credits``, ``recent_transactions``
            (newest first) and ``top_customers`` (highest balance first), the
            two lists capped at ``limit`` entries.
    """
    customers = list_customers(context)
    transactions = list_transactions(context)
    return {
        "total_customers": len(customers),
        "total_balance": sum(customer.balance for customer in customers),
        "total_debits": sum(
            row.total_amount for row in transactions if row.transaction_type == TransactionType.DEBIT.value
        ),
        "total_credits": sum(
            row.total_amount for row in transactions if row.transaction_type == TransactionType.CREDIT.value
        ),
        "recent_transactions": sorted(transactions, key=lambda row: row.created_at, reverse=True)[:limit],
        "top_customers": sorted(customers, key=lambda row: row.balance, reverse=True)[:limit],
    }


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    email: str,
    phone: str = "",
    address: str = "",
    payment_term_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomerRow:
    """Create a customer with a zero balance.

    Raises:
        ValidationError: If ``name`` or ``email`` is blank, or a text field
            holds control characters a worksheet cannot store.
        NotFoundError: If ``payment_term_id`` references an unknown term.
    """
    customer = data_manager.CustomerRow(
        customer_id=generate_id(),
        name=require_text(name, "name"),
        email=require_text(email, "email"),
        phone=optional_text(phone, "phone"),
        address=optional_text(address, "address"),
        payment_term_id=_resolve_payment_term_id(context, payment_term_id),
        balance=0.0,
        created_at=_resolve_timestamp(timestamp).isoformat(),
    )

    with unit_of_work(context, "add_customer") as uow:
        uow.add(RecordKind.CUSTOMERS, customer)
    context.projection.customers[customer.customer_id] = customer
    log.info("Added customer '%s' (%s)", customer.customer_id, customer.name)
    return customer


def update_customer(context: RuntimeContext, customer_id: str, **changes: Any) -> data_manager.CustomerRow:
    """Edit a customer's contact fields or payment term.

    Only ``EDITABLE_CUSTOMER_FIELDS`` may be changed. The balance is derived
    from transactions and is never accepted here.

    Raises:
        NotFoundError: If the customer or the referenced payment term is unknown.
        ValidationError: If a non-editable field is supplied or a required
            field becomes blank.
    """
    rejected = sorted(set(changes) - EDITABLE_CUSTOMER_FIELDS)
    if rejected:
        log.error("Rejected update of non-editable customer fields: %s", ", ".join(rejected))
        raise ValidationError(f"Customer fields cannot be edited: {', '.join(rejected)}")

    current = get_customer(context, customer_id)
    normalized: Dict[str, Any] = {}
    if "name" in changes:
        normalized["name"] = require_text(changes["name"], "name")
    if "email" in changes:
        normalized["email"] = require_text(changes["email"], "email")
    for key in ("phone", "address"):
        if key in changes:
            normalized[key] = optional_text(changes[key], key)
    if "payment_term_id" in changes:
        normalized["payment_term_id"] = _resolve_payment_term_id(context, changes["payment_term_id"])

    updated = replace(current, **normalized)
    with unit_of_work(context, "update_customer") as uow:
        uow.put(RecordKind.CUSTOMERS, updated)
    context.projection.customers[customer_id] = updated
    log.info("Updated customer '%s' (%s)", customer_id, ", ".join(sorted(normalized)) or "no changes")
    return updated


def delete_customer(context: RuntimeContext, customer_id: str) -> None:
    """Delete a customer and every transaction recorded against it.

    Transactions are found through the ``CustomerID`` index and removed
    without balance reversal since the owning customer is gone. Either all
    deletions commit or the workbook is rolled back. Unknown ids are a no-op.
    """
    with unit_of_work(context, "delete_customer") as uow:
        removed = uow.delete(RecordKind.CUSTOMERS, customer_id)
        orphan_ids = [
            row.transaction_id
            for row in data_manager.iter_by_index(
                context.workbook, RecordKind.TRANSACTIONS, "CustomerID", customer_id
            )
        ]
        for transaction_id in orphan_ids:
            uow.delete(RecordKind.TRANSACTIONS, transaction_id)

    context.projection.customers.pop(customer_id, None)
    for transaction_id in orphan_ids:
        context.projection.transactions.pop(transaction_id, None)

    if removed is None and not orphan_ids:
        log.debug("delete_customer: no customer with id '%s'", customer_id)
        return
    log.info("Deleted customer '%s' and %d transaction(s)", customer_id, len(orphan_ids))


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    category: str,
    price: float,
    unit: str = "kg",
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Add a catalog product.

    Raises:
        ValidationError: If ``name``, ``category`` or ``unit`` is blank or
            ``price`` is not strictly positive.
    """
    product = data_manager.ProductRow(
        product_id=generate_id(),
        name=require_text(name, "name"),
        category=require_text(category, "category"),
        unit=require_text(unit, "unit"),
        price=require_positive_price(price),
        created_at=_resolve_timestamp(timestamp).isoformat(),
    )

    with unit_of_work(context, "add_product") as uow:
        uow.add(RecordKind.PRODUCTS, product)
    context.projection.products[product.product_id] = product
    log.info("Added product '%s' (%s @ %s/%s)", product.product_id, product.name, product.price, product.unit)
    return product


def update_product(context: RuntimeContext, product_id: str, **changes: Any) -> data_manager.ProductRow:
    """Edit a product's name, category, unit or price.

    Raises:
        NotFoundError: If the product is unknown.
        ValidationError: If an unknown field is supplied or a value is invalid.
    """
    rejected = sorted(set(changes) - EDITABLE_PRODUCT_FIELDS)
    if rejected:
        log.error("Rejected update of unknown product fields: %s", ", ".join(rejected))
        raise ValidationError(f"Product fields cannot be edited: {', '.join(rejected)}")

    current = get_product(context, product_id)
    normalized: Dict[str, Any] = {}
    for key in ("name", "category", "unit"):
        if key in changes:
            normalized[key] = require_text(changes[key], key)
    if "price" in changes:
        normalized["price"] = require_positive_price(changes["price"])

    updated = replace(current, **normalized)
    with unit_of_work(context, "update_product") as uow:
        uow.put(RecordKind.PRODUCTS, updated)
    context.projection.products[product_id] = updated
    log.info("Updated product '%s'", product_id)
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Delete a product; unknown ids are a no-op."""
    with unit_of_work(context, "delete_product") as uow:
        removed = uow.delete(RecordKind.PRODUCTS, product_id)
    context.projection.products.pop(product_id, None)
    if removed is not None:
        log.info("Deleted product '%s'", product_id)


# ---------------------------------------------------------------------------
# Payment terms
# ---------------------------------------------------------------------------


def add_payment_term(context: RuntimeContext, *, name: str, days: int) -> data_manager.PaymentTermRow:
    """Register a named net-days payment term.

    Raises:
        ValidationError: If ``name`` is blank or ``days`` is not a
            non-negative integer.
    """
    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        log.error("Payment term days validation failed: %r", days)
        raise ValidationError("Payment term days must be a non-negative integer")

    term = data_manager.PaymentTermRow(payment_term_id=generate_id(), name=require_text(name, "name"), days=days)
    with unit_of_work(context, "add_payment_term") as uow:
        uow.add(RecordKind.PAYMENT_TERMS, term)
    context.projection.payment_terms[term.payment_term_id] = term
    log.info("Added payment term '%s' (%s, %d days)", term.payment_term_id, term.name, term.days)
    return term


def seed_default_payment_terms(context: RuntimeContext) -> List[data_manager.PaymentTermRow]:
    """Insert ``DEFAULT_PAYMENT_TERMS`` when no payment term exists yet."""

    if context.projection.payment_terms:
        return []

    terms = [
        data_manager.PaymentTermRow(payment_term_id=generate_id(), name=name, days=days)
        for name, days in DEFAULT_PAYMENT_TERMS
    ]
    with unit_of_work(context, "seed_default_payment_terms") as uow:
        for term in terms:
            uow.add(RecordKind.PAYMENT_TERMS, term)
    for term in terms:
        context.projection.payment_terms[term.payment_term_id] = term
    log.info("Seeded %d default payment terms", len(terms))
    return terms


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def add_transaction(context: RuntimeContext, command: TransactionCommand) -> data_manager.TransactionRow:
    """Record a debit or credit and move the customer's balance accordingly.

    The transaction insert and the customer update are committed together.
    The insert is written first; if the balance update or the save fails the
    insert is rolled back, and :class:`PartialCommit` is raised when that
    rollback is impossible.

    Args:
        context (RuntimeContext): Runtime context owning workbook and projection.
        command (TransactionCommand): Customer, type, date and line items.

    Returns:
        data_manager.TransactionRow: The stored transaction with its computed
            total and the customer name captured at creation time.

    Raises:
        NotFoundError: If the customer is unknown. Nothing is written.
        ValidationError: If the type, date or items are invalid. Nothing is
            written.
        data_manager.StorageFailure: If the workbook could not be updated.
    """
    customer = get_customer(context, command.customer_id)
    transaction_type = require_transaction_type(command.transaction_type)
    date = require_text(command.date, "date")
    items = build_items(command.items)

    total = calculate_total(items)
    transaction = data_manager.TransactionRow(
        transaction_id=generate_id(),
        customer_id=customer.customer_id,
        customer_name=customer.name,
        items=items,
        total_amount=total,
        transaction_type=transaction_type.value,
        date=date,
        created_at=_resolve_timestamp(command.timestamp).isoformat(),
    )
    updated_customer = replace(customer, balance=customer.balance + balance_contribution(transaction))

    with unit_of_work(context, "add_transaction") as uow:
        uow.add(RecordKind.TRANSACTIONS, transaction)
        uow.put(RecordKind.CUSTOMERS, updated_customer)

    context.projection.transactions[transaction.transaction_id] = transaction
    context.projection.customers[customer.customer_id] = updated_customer
    log.info(
        "Recorded %s '%s' for customer '%s' (total=%s, balance=%s)",
        transaction.transaction_type,
        transaction.transaction_id,
        customer.customer_id,
        total,
        updated_customer.balance,
    )
    return transaction


def delete_transaction(context: RuntimeContext, transaction_id: str) -> None:
    """Delete a transaction and undo its effect on the owning customer.

    Unknown ids are a no-op. When the owning customer no longer exists the
    balance reversal is skipped.
    """
    transaction = context.projection.transactions.get(transaction_id)
    if transaction is None:
        log.debug("delete_transaction: no transaction with id '%s'", transaction_id)
        return

    customer = context.projection.customers.get(transaction.customer_id)
    updated_customer = None
    if customer is not None:
        updated_customer = replace(customer, balance=customer.balance - balance_contribution(transaction))

    with unit_of_work(context, "delete_transaction") as uow:
        uow.delete(RecordKind.TRANSACTIONS, transaction_id)
        if updated_customer is not None:
            uow.put(RecordKind.CUSTOMERS, updated_customer)

    context.projection.transactions.pop(transaction_id, None)
    if updated_customer is None:
        log.warning(
            "Deleted transaction '%s' whose customer '%s' no longer exists",
            transaction_id,
            transaction.customer_id,
        )
        return
    context.projection.customers[updated_customer.customer_id] = updated_customer
    log.info(
        "Deleted %s '%s' for customer '%s' (balance=%s)",
        transaction.transaction_type,
        transaction_id,
        updated_customer.customer_id,
        updated_customer.balance,
    )


def reconcile_balances(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Rewrite drifted customer balances from the transaction ledger.

    Intended for operators recovering from a :class:`PartialCommit`. All
    corrections are committed as one unit.

    Returns:
        list[data_manager.CustomerRow]: Customers whose balance was corrected.
    """
    drift = check_balances(context)
    corrected = [
        replace(context.projection.customers[customer_id], balance=expected)
        for customer_id, (_stored, expected) in drift.items()
    ]
    if not corrected:
        return []

    with unit_of_work(context, "reconcile_balances") as uow:
        for customer in corrected:
            uow.put(RecordKind.CUSTOMERS, customer)
    for customer in corrected:
        context.projection.customers[customer.customer_id] = customer
    log.info("Reconciled balances for %d customer(s)", len(corrected))
    return corrected


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def build_items(items: Sequence[ItemCommand]) -> Tuple[data_manager.TransactionItem, ...]:
    """Validate line items and assign each a fresh identifier.

    Raises:
        ValidationError: If the list is empty or any item is invalid.
    """
    if not items:
        log.error("Transaction rejected: no line items")
        raise ValidationError("A transaction needs at least one item")
    return tuple(
        data_manager.TransactionItem(
            item_id=generate_id(),
            name=require_text(item.name, "item name"),
            quantity=require_positive_quantity(item.quantity),
            price=require_nonnegative_money(item.price),
        )
        for item in items
    )


def calculate_total(items: Sequence[data_manager.TransactionItem]) -> float:
    """Return ``Σ quantity × price`` over ``items``."""
    return sum(item.quantity * item.price for item in items)


def require_transaction_type(value: Union[TransactionType, str]) -> TransactionType:
    """Coerce ``value`` into a :class:`TransactionType`."""
    try:
        return TransactionType(value)
    except ValueError as exc:
        log.error("Transaction type validation failed: %r", value)
        raise ValidationError(f"Unknown transaction type: {value!r}") from exc


def require_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped, rejecting blanks."""
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        log.error("Validation failed: %s is required", field_name)
        raise ValidationError(f"{field_name.capitalize()} is required")
    return _require_storable(text, field_name)


def optional_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped, treating ``None`` as an empty string."""
    return _require_storable((value or "").strip(), field_name)


def _require_storable(text: str, field_name: str) -> str:
    if ILLEGAL_CHARACTERS_RE.search(text):
        log.error("Validation failed: %s contains control characters", field_name)
        raise ValidationError(f"{field_name.capitalize()} contains characters that cannot be stored")
    return text


def _require_number(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        log.error("Validation failed: %s=%r is not a number", field_name, value)
        raise ValidationError(f"{field_name.capitalize()} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        log.error("Validation failed: %s=%r is not a number", field_name, value)
        raise ValidationError(f"{field_name.capitalize()} must be a number") from exc
    if not math.isfinite(number):
        log.error("Validation failed: %s=%r is not finite", field_name, value)
        raise ValidationError(f"{field_name.capitalize()} must be finite")
    return number


def require_positive_quantity(quantity: Any) -> float:
    """Validate that a quantity is strictly positive."""
    number = _require_number(quantity, "quantity")
    if number <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")
    return number


def require_nonnegative_money(amount: Any) -> float:
    """Validate that an item price is zero or positive."""
    number = _require_number(amount, "price")
    if number < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Price must be zero or positive")
    return number


def require_positive_price(price: Any) -> float:
    """Validate that a catalog price is strictly positive."""
    number = _require_number(price, "price")
    if number <= 0:
        log.error("Product price validation failed: %s", price)
        raise ValidationError("Price must be greater than zero")
    return number


def _resolve_payment_term_id(context: RuntimeContext, payment_term_id: Optional[str]) -> Optional[str]:
    if payment_term_id is None or payment_term_id == "":
        return None
    return get_payment_term(context, payment_term_id).payment_term_id


__all__ = [
    "LedgerError",
    "NotFoundError",
    "ValidationError",
    "PartialCommit",
    "Projection",
    "RuntimeContext",
    "ItemCommand",
    "TransactionCommand",
    "UnitOfWork",
    "unit_of_work",
    "load_runtime_context",
    "ensure_schema_version",
    "load_projection",
    "persist_context",
    "refresh_context",
    "list_customers",
    "list_products",
    "list_transactions",
    "list_payment_terms",
    "list_customer_transactions",
    "get_customer",
    "get_product",
    "get_transaction",
    "get_payment_term",
    "check_balances",
    "calculate_dashboard_summary",
    "add_customer",
    "update_customer",
    "delete_customer",
    "add_product",
    "update_product",
    "delete_product",
    "add_payment_term",
    "seed_default_payment_terms",
    "add_transaction",
    "delete_transaction",
    "reconcile_balances",
]
