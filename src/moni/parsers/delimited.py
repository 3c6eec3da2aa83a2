"""Delimited (CSV) bank statement parser.

Brazilian bank exports come in many shapes, so this parser does not
expect a fixed schema:

* The delimiter is ``;`` when the header row contains one, else ``,``.
* Date, amount, and description columns are located by matching
  localized header names. When the date or amount column cannot be
  found, columns are taken positionally: 0=date, 1=description,
  2=amount.
* An explicit :class:`~moni.models.ColumnMapping` bypasses detection.

Dates are accepted as ``dd/mm/yyyy``, ``dd-mm-yyyy`` and ``yyyy-mm-dd``.
Amounts may use Brazilian (``1.234,56``) or plain (``1234.56``)
notation. Rows with an unusable date or amount are dropped.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from collections.abc import Iterator
from datetime import date
from decimal import Decimal, InvalidOperation

from moni.models import ColumnMapping, RawRow

logger = logging.getLogger(__name__)

NO_DESCRIPTION = "Sem descrição"

DATE_HEADER = re.compile(r"data|date")
AMOUNT_HEADER = re.compile(r"valor|amount|value")
DESCRIPTION_HEADER = re.compile(r"descri|description|historico|histórico|memo|name")

_DMY = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$")
_YMD = re.compile(r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})$")
_BR_THOUSANDS = re.compile(r"\d\.\d{3},")
_BR_DECIMAL = re.compile(r",\d{2}$")


def parse(
    content: str,
    file_hint: str = "",
    mapping: ColumnMapping | None = None,
) -> Iterator[RawRow]:
    """Yield statement rows from CSV *content* in file order.

    Args:
        content: Full text of the CSV export, header row first.
        file_hint: Bank hint attached to every row (file name or the
            bank picked by the user).
        mapping: Explicit column indices. When given, header detection
            is skipped and the first row is still treated as a header.

    Yields:
        One :class:`RawRow` per usable data row.
    """
    lines = (line for line in io.StringIO(content) if line.strip())
    header_line = next(lines, None)
    if header_line is None:
        return

    delimiter = ";" if ";" in header_line else ","
    header = [cell.strip().lower() for cell in next(csv.reader([header_line], delimiter=delimiter))]

    if mapping is not None:
        date_idx = mapping.date_col
        desc_idx = mapping.description_col
        amount_idx = mapping.amount_col
        positional = False
        file_hint = file_hint or mapping.source_hint
    else:
        date_idx = _find_column(header, DATE_HEADER)
        amount_idx = _find_column(header, AMOUNT_HEADER)
        desc_idx = _find_column(header, DESCRIPTION_HEADER)
        positional = date_idx == -1 or amount_idx == -1
        if positional:
            date_idx, desc_idx, amount_idx = 0, 1, 2

    for line_no, parts in enumerate(csv.reader(lines, delimiter=delimiter), start=2):
        parts = [p.strip() for p in parts]

        if positional and len(parts) < 3:
            logger.debug("CSV line %d: fewer than 3 columns, skipped", line_no)
            continue
        if len(parts) <= max(date_idx, amount_idx):
            logger.debug("CSV line %d: missing date/amount column, skipped", line_no)
            continue

        txn_date = normalize_date(parts[date_idx])
        amount = parse_amount(parts[amount_idx])
        if txn_date is None or amount is None:
            logger.debug("CSV line %d: unparseable date or amount, skipped", line_no)
            continue

        yield RawRow(
            date=txn_date,
            description=_description(parts, desc_idx, positional),
            amount=amount,
            source_hint=file_hint,
        )


def normalize_date(raw: str) -> date | None:
    """Parse ``dd/mm/yyyy``, ``dd-mm-yyyy`` or ``yyyy-mm-dd``.

    Returns ``None`` for anything else, including impossible dates such
    as ``31/02/2026``.
    """
    raw = raw.strip()
    match = _DMY.match(raw)
    if match:
        day, month, year = (int(g) for g in match.groups())
    else:
        match = _YMD.match(raw)
        if not match:
            return None
        year, month, day = (int(g) for g in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_amount(raw: str) -> Decimal | None:
    """Parse a Brazilian or plain decimal amount.

    ``"1.234,56"`` and ``"999,99"`` use ``,`` as the decimal separator;
    ``"1234.56"`` is read as-is. Returns ``None`` when the text is not a
    finite number.
    """
    cleaned = re.sub(r"\s", "", raw)
    if _BR_THOUSANDS.search(cleaned):
        cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    elif _BR_DECIMAL.search(cleaned):
        cleaned = cleaned.replace(",", ".", 1)
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _find_column(header: list[str], pattern: re.Pattern[str]) -> int:
    for idx, name in enumerate(header):
        if pattern.search(name):
            return idx
    return -1


def _description(parts: list[str], desc_idx: int, positional: bool = False) -> str:
    if desc_idx < 0:
        return NO_DESCRIPTION
    # Positional rows have the amount right after the description.
    candidates = (desc_idx,) if positional else (desc_idx, desc_idx + 1)
    for idx in candidates:
        if idx < len(parts) and parts[idx]:
            return parts[idx]
    return NO_DESCRIPTION
