"""Parser registry for bank statement formats.

Each parser is a module exposing a ``parse(content, file_hint, mapping)``
generator that yields :class:`~moni.models.RawRow` objects lazily, in
file order. The ``PARSERS`` dict maps format names to parse functions,
and ``get_parser()`` provides a convenient lookup with a clear error on
unknown names.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

from moni.models import ColumnMapping, RawRow
from moni.parsers import delimited, ofx

PARSERS: dict[str, Callable] = {
    "OFX": ofx.parse,
    "CSV": delimited.parse,
}


def get_parser(name: str) -> Callable:
    """Look up a parser by format name (case-insensitive).

    Raises:
        KeyError: If no parser is registered under the given name.
    """
    return PARSERS[name.upper()]


def parse(
    content: str,
    fmt: str,
    file_hint: str | None = None,
    mapping: ColumnMapping | None = None,
) -> Iterator[RawRow]:
    """Parse statement *content* of format *fmt* (``"OFX"`` or ``"CSV"``).

    Malformed rows are silently omitted. The returned iterator is single
    pass.

    Raises:
        ValueError: If *fmt* is not a supported format.
    """
    try:
        parser = get_parser(fmt)
    except KeyError:
        raise ValueError(
            f"Unsupported statement format {fmt!r}; expected one of {', '.join(PARSERS)}"
        ) from None
    return parser(content, file_hint or "", mapping)


def detect_format(file_name: str) -> str:
    """Guess the statement format from a file name extension."""
    suffix = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    if suffix in ("ofx", "qfx"):
        return "OFX"
    if suffix in ("csv", "txt"):
        return "CSV"
    raise ValueError(f"Cannot tell the statement format of {file_name!r}; use OFX or CSV")
