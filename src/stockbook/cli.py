"""Command-line entry points for the Stockbook toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing report rows. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import ProductSort, ProductType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockbook-cli",
        description="Command-line tools for the Stockbook inventory ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini in the working directory or its parents).",
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
    """Declare mutating CLI commands such as sales and reversals."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "remove-product": register_remove_product_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "sell": register_sell_command(subparsers),
        "reverse-sale": register_reverse_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


_PRODUCT_TYPE_CHOICES = [member.value for member in ProductType]


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a new product to the catalogue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-name", required=True)
        parser.add_argument(
            "--product-type",
            choices=_PRODUCT_TYPE_CHOICES,
            default=None,
            help="Catalogue category (defaults to the configured ProductType).",
        )
        parser.add_argument("--quantity", type=int, default=0)
        parser.add_argument("--unit-cost", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--image-url", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Change the name, type, cost, price, or image of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", default=None)
        parser.add_argument("--product-type", choices=_PRODUCT_TYPE_CHOICES, default=None)
        parser.add_argument("--unit-cost", default=None)
        parser.add_argument("--unit-price", default=None)
        parser.add_argument("--image-url", default=None, help="Pass an empty string to clear the image.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_remove_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-product``."""
    name = "remove-product"
    help_text = "Delete a product; its sales stay in the log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_product)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Increase or decrease the units on hand outside of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--delta", type=int, required=True, help="Signed change, e.g. 1 or -1.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Record a sale and update the product ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--units", type=int, required=True)
        parser.add_argument("--sell-price", required=True, help="Sale price per unit.")
        parser.add_argument(
            "--override-cost",
            default=None,
            help="Purchase cost per unit to use instead of the product's standing cost.",
        )
        parser.add_argument(
            "--sale-id",
            default=None,
            help="Idempotency key; resubmitting the same id does not sell twice.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_reverse_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse-sale``."""
    name = "reverse-sale"
    help_text = "Delete a sale and return its units and profit to the product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse_sale)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display products and their stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None)
        parser.add_argument("--product-type", choices=_PRODUCT_TYPE_CHOICES, default=None)
        parser.add_argument("--hide-out-of-stock", action="store_true")
        parser.add_argument("--hide-low-stock", action="store_true")
        parser.add_argument(
            "--sort",
            choices=[member.value for member in ProductSort],
            default=ProductSort.NAME_ASC.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display the sales log, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report, mutates=False)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display inventory value, profit, and sales totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``config_path`` the data layer searches upward from the working
    directory for ``config.ini``.
    """
    target = Path(config_path) if config_path is not None else None
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


def _optional_money(raw: Optional[str]) -> Optional[Decimal]:
    return core_logic.parse_money(raw) if raw is not None else None


def translate_add_product(args: argparse.Namespace, *, default_product_type: str) -> core_logic.ProductCommand:
    """Translate CLI args into an add-product command object."""
    return core_logic.ProductCommand(
        product_name=args.product_name,
        product_type=args.product_type or default_product_type,
        quantity=args.quantity,
        unit_cost=core_logic.parse_money(args.unit_cost),
        unit_price=core_logic.parse_money(args.unit_price),
        image_url=args.image_url,
    )


def translate_edit_product(args: argparse.Namespace) -> core_logic.ProductEditCommand:
    """Translate CLI args into a product edit command object."""
    return core_logic.ProductEditCommand(
        product_id=args.product_id,
        product_name=args.product_name,
        product_type=args.product_type,
        unit_cost=_optional_money(args.unit_cost),
        unit_price=_optional_money(args.unit_price),
        image_url=args.image_url,
    )


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        units=args.units,
        sell_price=core_logic.parse_money(args.sell_price),
        override_cost=_optional_money(args.override_cost),
        sale_id=args.sale_id,
    )


def format_product(product: data_manager.ProductRow) -> str:
    """Render one product as a single report line."""
    return (
        f"{product.product_id}  {product.product_name} [{product.product_type}]  "
        f"qty={product.quantity}  cost={product.unit_cost}  price={product.unit_price}  "
        f"profit={product.profit}"
    )


def format_sale(sale: data_manager.SaleRow) -> str:
    """Render one sale as a single report line."""
    override = f" (override {sale.new_cost})" if sale.new_cost is not None else ""
    return (
        f"{sale.sale_id}  {sale.created_at_iso}  {sale.product_name}  units={sale.units}  "
        f"price={sale.sell_price}  cost={sale.cost}{override}  profit={sale.profit}"
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    command = translate_add_product(args, default_product_type=context.settings.default_product_type)
    product = core_logic.add_product(context, command)
    print(format_product(product))
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow in the BLL."""
    product = core_logic.edit_product(context, translate_edit_product(args))
    print(format_product(product))
    return 0


def run_remove_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the remove-product workflow in the BLL."""
    product = core_logic.remove_product(context, args.product_id)
    print(format_product(product))
    return 0


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quantity adjustment workflow in the BLL."""
    product = core_logic.adjust_quantity(context, args.product_id, args.delta)
    print(format_product(product))
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sell(args))
    print(format_sale(sale))
    return 0


def run_reverse_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale reversal workflow via the BLL."""
    sale = core_logic.reverse_sale(context, args.sale_id)
    print(format_sale(sale))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the filtered product listing."""
    products = core_logic.list_products(
        context,
        search=args.search,
        product_type=args.product_type,
        include_out_of_stock=not args.hide_out_of_stock,
        include_low_stock=not args.hide_low_stock,
        sort_by=args.sort,
    )
    for product in products:
        print(format_product(product))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sales log."""
    for sale in core_logic.list_sales(context, product_id=args.product_id):
        print(format_sale(sale))
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard metrics, one per line."""
    for key, value in core_logic.calculate_dashboard(context).items():
        print(f"{key}: {value}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
