"""OFX statement parser.

Only the ``<STMTTRN>`` blocks are read. SGML-style OFX 1.x (unclosed
tags) and XML-style OFX 2.x are both handled because every field is
read up to the next ``<`` or line break.

A block without ``<DTPOSTED>`` or ``<TRNAMT>`` is skipped; parsing
carries on with the next block.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from datetime import date

from moni.models import ColumnMapping, RawRow
from moni.parsers.delimited import NO_DESCRIPTION, parse_amount

logger = logging.getLogger(__name__)

_BLOCK = re.compile(r"<STMTTRN>(.*?)</STMTTRN>", re.IGNORECASE | re.DOTALL)
_POSTED = re.compile(r"<DTPOSTED>\s*(\d{8})", re.IGNORECASE)
_AMOUNT = re.compile(r"<TRNAMT>\s*([-+\d.,]+)", re.IGNORECASE)
_NAME = re.compile(r"<NAME>([^<\r\n]+)", re.IGNORECASE)
_MEMO = re.compile(r"<MEMO>([^<\r\n]+)", re.IGNORECASE)
_ORG = re.compile(r"<ORG>([^<\r\n]+)", re.IGNORECASE)


def parse(
    content: str,
    file_hint: str = "",
    mapping: ColumnMapping | None = None,
) -> Iterator[RawRow]:
    """Yield one :class:`RawRow` per well-formed ``<STMTTRN>`` block.

    Args:
        content: Full OFX document text.
        file_hint: Bank hint for every row. Defaults to the statement's
            ``<ORG>`` value when empty.
        mapping: Ignored; accepted so every parser shares one signature.
    """
    if not file_hint:
        org = _ORG.search(content)
        file_hint = org.group(1).strip() if org else ""

    for block_no, match in enumerate(_BLOCK.finditer(content), start=1):
        block = match.group(1)

        posted = _POSTED.search(block)
        amount_match = _AMOUNT.search(block)
        if not posted or not amount_match:
            logger.debug("OFX block %d: missing DTPOSTED or TRNAMT, skipped", block_no)
            continue

        txn_date = _ofx_date(posted.group(1))
        amount = parse_amount(amount_match.group(1))
        if txn_date is None or amount is None:
            logger.debug("OFX block %d: invalid date or amount, skipped", block_no)
            continue

        name = _NAME.search(block)
        memo = _MEMO.search(block)
        description = ""
        if name:
            description = name.group(1).strip()
        if not description and memo:
            description = memo.group(1).strip()

        yield RawRow(
            date=txn_date,
            description=description or NO_DESCRIPTION,
            amount=amount,
            source_hint=file_hint,
        )


def _ofx_date(raw: str) -> date | None:
    """Convert the ``YYYYMMDD`` prefix of an OFX timestamp to a date."""
    try:
        return date(int(raw[:4]), int(raw[4:6]), int(raw[6:8]))
    except ValueError:
        return None
