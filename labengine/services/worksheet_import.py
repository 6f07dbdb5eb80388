import logging
import re
from dataclasses import dataclass, field
from typing import Any, Tuple

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill

from labengine.services.recalc import add_row, on_field_edit
from labengine.services.values import is_blank

logger = logging.getLogger(__name__)

HEADER_SHEET = "Header"
ROWS_SHEET = "Rows"
HEADER_FILL = "D8EAF9"
_UNIT_SUFFIX_RE = re.compile(r"\s*\[[^\]]*\]\s*$")


@dataclass(frozen=True)
class ImportResult:
    record: Any
    rows_imported: int = 0
    unknown_columns: Tuple[str, ...] = ()
    rejected: Tuple[Tuple[str, str, str], ...] = field(default_factory=tuple)


def write_input_template(schema, path):
    """Blank workbook with a Header sheet and one column per row field."""
    wb = Workbook()
    ws = wb.active
    ws.title = ROWS_SHEET
    for col, f in enumerate(schema.row_fields, start=1):
        ws.cell(row=1, column=col, value=_column_title(f))
        ws.cell(row=1, column=col).font = Font(size=9, bold=True)
        ws.cell(row=1, column=col).fill = PatternFill("solid", fgColor=HEADER_FILL)
        ws.cell(row=1, column=col).alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        ws.column_dimensions[ws.cell(row=1, column=col).column_letter].width = 18

    if schema.header_fields:
        hs = wb.create_sheet(HEADER_SHEET)
        for r, f in enumerate(schema.header_fields, start=1):
            hs.cell(row=r, column=1, value=_column_title(f))
            hs.cell(row=r, column=1).font = Font(size=9, bold=True)
            if f.default is not None:
                hs.cell(row=r, column=2, value=f.default)
        hs.column_dimensions["A"].width = 32
    wb.save(path)
    return path


def read_rows(path, sheet=None):
    """Return ``(titles, rows, header)``; blank lines are skipped.

    ``header`` holds (title, value) pairs from the optional Header sheet.
    """
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb[sheet] if sheet else (wb[ROWS_SHEET] if ROWS_SHEET in wb.sheetnames else wb.worksheets[0])
        lines = ws.iter_rows(values_only=True)
        titles = [str(v).strip() if v is not None else "" for v in next(lines, ())]
        rows = [list(line) for line in lines if any(not is_blank(v) for v in line)]
        header = []
        if HEADER_SHEET in wb.sheetnames and ws.title != HEADER_SHEET:
            for line in wb[HEADER_SHEET].iter_rows(min_col=1, max_col=2, values_only=True):
                if line and not is_blank(line[0]):
                    header.append((str(line[0]).strip(), line[1] if len(line) > 1 else None))
    finally:
        wb.close()
    return titles, rows, header


def import_workbook(record, path, sheet=None):
    """Apply a workbook to ``record`` through the normal edit path."""
    schema = record.schema
    titles, rows, header = read_rows(path, sheet)
    columns = {i: _match(title, schema.row_fields) for i, title in enumerate(titles) if title}
    unknown = [titles[i] for i, key in columns.items() if key is None]
    rejected = []

    for title, value in header:
        if is_blank(value):
            continue
        key = _match(title, schema.header_fields)
        if key is None:
            unknown.append(title)
            continue
        record = on_field_edit(record, None, key, value)
        if key in record.header_invalid:
            rejected.append(("header", key, record.header_invalid[key]))

    for n, line in enumerate(rows):
        if n >= len(record.rows):
            record = add_row(record)
        row_id = record.rows[n].id
        for i, key in columns.items():
            if key is None or i >= len(line) or is_blank(line[i]):
                continue
            record = on_field_edit(record, row_id, key, line[i])
            message = record.rows[n].invalid.get(key)
            if message:
                rejected.append((row_id, key, message))

    if unknown:
        logger.warning("Ignored unknown columns in %s: %s", path, ", ".join(unknown), extra={"test_type": schema.test_type})
    logger.info("Imported %d rows into %s", len(rows), schema.test_type, extra={"test_type": schema.test_type})
    return ImportResult(record=record, rows_imported=len(rows), unknown_columns=tuple(unknown), rejected=tuple(rejected))


def _column_title(f):
    label = f.label or f.key
    return f"{label} [{f.unit}]" if f.unit else label


def _match(title, fields):
    name = _UNIT_SUFFIX_RE.sub("", title).strip().lower()
    for f in fields:
        if name == f.key.lower() or (f.label and name == f.label.lower()):
            return f.key
    return None
