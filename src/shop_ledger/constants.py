"""Enumerations and schema constants shared across the ledger modules.

Keeps record kind names, transaction types and the workbook schema history in
one place so the storage layer, the domain layer and the CLI agree on them.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


class TransactionType(str, Enum):
    """Enumerate the two sides of a ledger entry."""

    DEBIT = "debit"
    CREDIT = "credit"


class RecordKind(str, Enum):
    """Logical record collections persisted by the store."""

    CUSTOMERS = "customers"
    PRODUCTS = "products"
    TRANSACTIONS = "transactions"
    PAYMENT_TERMS = "paymentTerms"


# Worksheet backing each record kind.
SHEET_NAMES: Mapping[RecordKind, str] = {
    RecordKind.CUSTOMERS: "Customers",
    RecordKind.PRODUCTS: "Products",
    RecordKind.TRANSACTIONS: "Transactions",
    RecordKind.PAYMENT_TERMS: "PaymentTerms",
}

SHEET_COLUMNS: Mapping[RecordKind, Sequence[str]] = {
    RecordKind.CUSTOMERS: [
        "CustomerID",
        "Name",
        "Email",
        "Phone",
        "Address",
        "PaymentTermID",
        "Balance",
        "CreatedAt",
    ],
    RecordKind.PRODUCTS: [
        "ProductID",
        "Name",
        "Category",
        "Unit",
        "Price",
        "CreatedAt",
    ],
    RecordKind.TRANSACTIONS: [
        "TransactionID",
        "CustomerID",
        "CustomerName",
        "Items",
        "TotalAmount",
        "Type",
        "Date",
        "CreatedAt",
    ],
    RecordKind.PAYMENT_TERMS: [
        "PaymentTermID",
        "Name",
        "Days",
    ],
}

META_SHEET = "_Meta"
META_COLUMNS: Sequence[str] = ["Key", "Value"]
SCHEMA_VERSION_KEY = "SchemaVersion"
INDEX_KEY_PREFIX = "index:"

# Kinds and secondary indexes introduced by each schema version. Upgrading
# from version N applies exactly the entry for N + 1.
SCHEMA_HISTORY: Mapping[int, Mapping[RecordKind, Sequence[str]]] = {
    1: {
        RecordKind.CUSTOMERS: [],
        RecordKind.TRANSACTIONS: ["CustomerID"],
    },
    2: {
        RecordKind.PAYMENT_TERMS: [],
    },
    3: {
        RecordKind.PRODUCTS: [],
    },
}

SCHEMA_VERSION = max(SCHEMA_HISTORY)

DEFAULT_PAYMENT_TERMS: Sequence[tuple[str, int]] = (
    ("Weekly", 7),
    ("Monthly", 30),
    ("6 Months", 180),
)


__all__ = [
    "TransactionType",
    "RecordKind",
    "SHEET_NAMES",
    "SHEET_COLUMNS",
    "META_SHEET",
    "META_COLUMNS",
    "SCHEMA_VERSION_KEY",
    "INDEX_KEY_PREFIX",
    "SCHEMA_HISTORY",
    "SCHEMA_VERSION",
    "DEFAULT_PAYMENT_TERMS",
]
