"""Utility for initializing the Pedidos ERP master workbook.

The module doubles as a script (``python setup_excel.py``) and as a library
used by tests or other tooling. Shared helpers keep the workbook bootstrap
logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence, Tuple
from uuid import uuid4
import sys

import openpyxl
from openpyxl.styles import Font

# Every table sheet starts with the record ID column.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Líneas de Pedido": [
        "ID",
        "Estatus",
        "No. de Pedido",
        "Línea",
        "Modelo",
        "Descripción",
        "Costo",
        "Historial de Estatus",
    ],
    "Pedidos": [
        "ID",
        "No. de Pedido",
        "Estatus",
        "Fecha Pedido",
        "MARCA",
        "Costos Adicionales",
        "Gastos Adicionales",
        "Historial de Estatus",
        "Productos",
    ],
    "Pagos": [
        "ID",
        "Pedido",
        "Método de Pago Admin",
        "Abono",
        "ID Pago",
        "Fecha Pago",
        "Descripción",
        "Notas",
        "Quién Realizó Pago",
        "Número de Referencia",
        "Tarjeta de Débito",
    ],
    "Métodos de Pago Admin": [
        "ID",
        "Nombre",
        "TIPO",
    ],
    "Opciones": [
        "Tabla",
        "Campo",
        "Valor",
    ],
}

_STATUS_VALUES: Tuple[str, ...] = (
    "Abierto",
    "Confirmar y Monitorear",
    "Solicitado",
    "Enviado",
    "Pendiente de Pago",
    "Pago Incompleto",
    "Pagado",
)

# Allowed values of enum-like fields as (table, field, value) rows.
DEFAULT_OPTIONS: Sequence[Tuple[str, str, str]] = (
    *(("Líneas de Pedido", "Estatus", value) for value in _STATUS_VALUES),
    *(("Pedidos", "Estatus", value) for value in _STATUS_VALUES),
    ("Pagos", "Quién Realizó Pago", "CANA"),
    ("Pagos", "Quién Realizó Pago", "NASL"),
)

# Payment methods seeded as (name, type) pairs.
DEFAULT_PAYMENT_METHODS: Sequence[Tuple[str, str]] = (
    ("Efectivo", "Efectivo"),
    ("Vales de despensa", "Vales"),
    ("Transferencia bancaria", "Transferencia"),
)

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory, matching how the CLI resolves them.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    options: Sequence[Tuple[str, str, str]] = DEFAULT_OPTIONS,
    payment_methods: Sequence[Tuple[str, str]] = DEFAULT_PAYMENT_METHODS,
    overwrite: bool = False,
) -> Path:
    """Create the Pedidos ERP master workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if "Opciones" in workbook.sheetnames:
        options_sheet = workbook["Opciones"]
        for row in options:
            options_sheet.append(list(row))

    if "Métodos de Pago Admin" in workbook.sheetnames:
        methods_sheet = workbook["Métodos de Pago Admin"]
        for name, type_tag in payment_methods:
            methods_sheet.append([f"rec{uuid4().hex[:14]}", name, type_tag])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``'s ``DataFile`` entry."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize Pedidos ERP data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Pedidos ERP Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
