"""Create an empty master workbook with the expected sheets and headers."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .data_manager import SHEET_COLUMNS, save_workbook


DEFAULT_DATA_FILE = "stock_ledger_data.xlsx"


def build_master_workbook() -> Workbook:
    """Return an in-memory workbook holding one sheet per ledger table."""

    wb = openpyxl.Workbook()
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        ws = wb.create_sheet(title=sheet_name)
        for col_idx, column_name in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = column_name
            cell.font = bold_font
        log.debug("Created sheet '%s'", sheet_name)

    return wb


def create_master_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Write a fresh master workbook to ``destination``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"'{destination}' already exists. Remove it or pass --force to re-initialize."
        )

    save_workbook(build_master_workbook(), destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stock-ledger-setup",
        description="Initialize an empty stock ledger workbook.",
    )
    parser.add_argument("path", nargs="?", default=DEFAULT_DATA_FILE, type=Path)
    parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        created = create_master_workbook(args.path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"Error: {exc}")
        return 1
    print(f"Successfully created '{created}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
