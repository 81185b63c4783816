"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer and printing plain
text results. Keeping the CLI thin means the same domain operations can be
driven by any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import TransactionType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Customer balances, products and transactions for a small shop ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "add-customer": register_add_customer_command(),
        "update-customer": register_update_customer_command(),
        "delete-customer": register_delete_command("delete-customer", "customer", run_delete_customer),
        "add-product": register_add_product_command(),
        "update-product": register_update_product_command(),
        "delete-product": register_delete_command("delete-product", "product", run_delete_product),
        "add-payment-term": register_add_payment_term_command(),
        "add-transaction": register_add_transaction_command(),
        "delete-transaction": register_delete_command("delete-transaction", "transaction", run_delete_transaction),
        "reconcile": register_simple_command(
            "reconcile", "Rewrite drifted customer balances from the ledger.", run_reconcile
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "customers": register_simple_command("customers", "List customers and balances.", run_list_customers),
        "products": register_simple_command("products", "List the product catalog.", run_list_products),
        "transactions": register_list_transactions_command(),
        "payment-terms": register_simple_command("payment-terms", "List payment terms.", run_list_payment_terms),
        "summary": register_simple_command("summary", "Display dashboard totals.", run_summary),
        "check": register_simple_command("check", "Report balances that drift from the ledger.", run_check),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Build a spec for a command that takes no arguments."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_delete_command(
    name: str,
    entity: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Build a spec for a delete command taking a single ``--id``."""
    help_text = f"Delete a {entity} by id."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="record_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_customer_command() -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer with a zero balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", required=True)
        parser.add_argument("--phone", default="")
        parser.add_argument("--address", default="")
        parser.add_argument("--payment-term-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_update_customer_command() -> CommandSpec:
    """Register the parser and executor for ``update-customer``."""
    name = "update-customer"
    help_text = "Edit a customer's contact details or payment term."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="record_id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--payment-term-id", default=None, help="Pass an empty string to clear the term.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_customer)


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--unit", default="kg")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command() -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit a catalog product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="record_id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--unit", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_add_payment_term_command() -> CommandSpec:
    """Register the parser and executor for ``add-payment-term``."""
    name = "add-payment-term"
    help_text = "Register a named net-days payment term."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--days", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_payment_term)


def register_add_transaction_command() -> CommandSpec:
    """Register the parser and executor for ``add-transaction``."""
    name = "add-transaction"
    help_text = "Record a debit (purchase) or credit (payment) for a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--type",
            dest="transaction_type",
            choices=[member.value for member in TransactionType],
            required=True,
        )
        parser.add_argument("--date", required=True, help="Transaction date, e.g. 2024-05-01.")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            default=[],
            metavar="NAME:QTY:PRICE",
            help="Line item; repeat for several items.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_transaction)


def register_list_transactions_command() -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "List transactions, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None, help="Only show one customer's transactions.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list_transactions)


def parse_item(raw: str) -> core_logic.ItemCommand:
    """Parse a ``NAME:QTY:PRICE`` argument into an item command."""
    try:
        name, quantity, price = raw.rsplit(":", 2)
        return core_logic.ItemCommand(name=name, quantity=float(quantity), price=float(price))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid item '{raw}', expected NAME:QTY:PRICE") from exc


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-customer request."""
    return {
        "name": args.name,
        "email": args.email,
        "phone": args.phone,
        "address": args.address,
        "payment_term_id": args.payment_term_id,
    }


def translate_changes(args: argparse.Namespace, fields: Iterable[str]) -> Dict[str, Any]:
    """Collect the update options the user actually supplied."""
    return {name: getattr(args, name) for name in fields if getattr(args, name, None) is not None}


def translate_add_transaction(args: argparse.Namespace) -> core_logic.TransactionCommand:
    """Translate CLI args into a transaction command object."""
    return core_logic.TransactionCommand(
        customer_id=args.customer_id,
        transaction_type=TransactionType(args.transaction_type),
        date=args.date,
        items=list(args.items),
    )


def format_customer(row: data_manager.CustomerRow) -> str:
    return f"{row.customer_id}  {row.name:<24} {row.email:<28} balance={row.balance:.2f}"


def format_transaction(row: data_manager.TransactionRow) -> str:
    return (
        f"{row.transaction_id}  {row.date:<10} {row.transaction_type:<6} "
        f"{row.customer_name:<24} total={row.total_amount:.2f} items={len(row.items)}"
    )


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(context, **translate_add_customer(args))
    print(customer.customer_id)
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-customer workflow in the BLL."""
    changes = translate_changes(args, ("name", "email", "phone", "address", "payment_term_id"))
    core_logic.update_customer(context, args.record_id, **changes)
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cascading customer delete."""
    core_logic.delete_customer(context, args.record_id)
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(
        context,
        name=args.name,
        category=args.category,
        price=args.price,
        unit=args.unit,
    )
    print(product.product_id)
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    changes = translate_changes(args, ("name", "category", "price", "unit"))
    core_logic.update_product(context, args.record_id, **changes)
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.record_id)
    return 0


def run_add_payment_term(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-payment-term workflow in the BLL."""
    term = core_logic.add_payment_term(context, name=args.name, days=args.days)
    print(term.payment_term_id)
    return 0


def run_add_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-transaction workflow via the BLL."""
    transaction = core_logic.add_transaction(context, translate_add_transaction(args))
    print(transaction.transaction_id)
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-transaction workflow via the BLL."""
    core_logic.delete_transaction(context, args.record_id)
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Rewrite drifted balances and list the corrected customers."""
    for customer in core_logic.reconcile_balances(context):
        print(format_customer(customer))
    return 0


def run_list_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print customers sorted by name."""
    rows = sorted(core_logic.list_customers(context), key=lambda row: row.name.lower())
    for row in rows:
        print(format_customer(row))
    return 0


def run_list_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the catalog sorted by product name."""
    rows = sorted(core_logic.list_products(context), key=lambda row: row.name.lower())
    for row in rows:
        print(f"{row.product_id}  {row.name:<24} {row.category:<20} {row.price:.2f}/{row.unit}")
    return 0


def run_list_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print transactions newest first, optionally for one customer."""
    if args.customer_id:
        core_logic.get_customer(context, args.customer_id)
        rows = core_logic.list_customer_transactions(context, args.customer_id)
    else:
        rows = sorted(core_logic.list_transactions(context), key=lambda row: row.created_at, reverse=True)
    for row in rows:
        print(format_transaction(row))
    return 0


def run_list_payment_terms(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print payment terms ordered by days."""
    for row in sorted(core_logic.list_payment_terms(context), key=lambda row: row.days):
        print(f"{row.payment_term_id}  {row.name:<12} {row.days} days")
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard totals."""
    summary = core_logic.calculate_dashboard_summary(context)
    print(f"Customers:     {summary['total_customers']}")
    print(f"Total balance: {summary['total_balance']:.2f}")
    print(f"Total debits:  {summary['total_debits']:.2f}")
    print(f"Total credits: {summary['total_credits']:.2f}")
    return 0


def run_check(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report drifted balances; exit code 1 when any is found."""
    drift = core_logic.check_balances(context)
    for customer_id, (stored, expected) in drift.items():
        print(f"{customer_id}  stored={stored:.2f} ledger={expected:.2f}")
    return 1 if drift else 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.PartialCommit):
        log.critical("%s", error)
        return 5
    if isinstance(error, data_manager.StorageFailure):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes when the context does not save on its own."""
    if not context.settings.autosave:
        core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
