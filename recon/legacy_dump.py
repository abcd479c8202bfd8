"""Read table rows out of a MySQL-style SQL dump of the legacy system."""

from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from recon.amounts import ZERO, to_decimal
from recon.models import LegacyPaymentRecord
from recon.outcomes import ItemResult

logger = logging.getLogger(__name__)

# complementos_pago: id, cuenta_id, fecha_pago, concepto, monto_sin_iva, monto_con_iva
PAYMENT_TABLE = "complementos_pago"
PAYMENT_COLUMNS = ("id", "entry_ref", "paid_on", "concept", "net", "gross")

_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "0": "\0", "Z": "\x1a"}
_NUMBER = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")
_ZERO_DATE = "0000-00-00"


def _convert(token: str, *, quoted: bool) -> Any:  # noqa: ANN401
    if quoted:
        return token
    token = token.strip()
    if token.upper() == "NULL":
        return None
    if _NUMBER.match(token):
        if "." in token or "e" in token.lower():
            return Decimal(token)
        return int(token)
    return token


def _parse_values(data: str, start: int) -> tuple[list[list[Any]], int]:
    """Parse `(v, ...),(v, ...)` from `start` up to the terminating `;`.

    Returns:
        Parsed rows and the index just past the statement
    """
    rows: list[list[Any]] = []
    row: list[Any] = []
    token: list[str] = []
    quoted = False
    in_string = False
    depth = 0
    i = start

    while i < len(data):
        char = data[i]
        if in_string:
            if char == "\\" and i + 1 < len(data):
                nxt = data[i + 1]
                token.append(_ESCAPES.get(nxt, nxt))
                i += 2
                continue
            if char == "'":
                if i + 1 < len(data) and data[i + 1] == "'":
                    token.append("'")
                    i += 2
                    continue
                in_string = False
            else:
                token.append(char)
        elif char == "'":
            if not "".join(token).strip():
                token = []
            in_string = True
            quoted = True
        elif char == "(":
            if depth == 0:
                row, token, quoted = [], [], False
            else:
                token.append(char)
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                row.append(_convert("".join(token), quoted=quoted))
                rows.append(row)
                token, quoted = [], False
            else:
                token.append(char)
        elif char == "," and depth == 1:
            row.append(_convert("".join(token), quoted=quoted))
            token, quoted = [], False
        elif char == ";" and depth == 0:
            return rows, i + 1
        elif depth > 0 and not (quoted and char.isspace()):
            token.append(char)
        i += 1

    return rows, i


def extract_table_rows(sql: str, table: str) -> list[list[Any]]:
    """Return every row inserted into `table`, across all INSERT statements.

    Args:
        sql: Dump contents
        table: Table name as written between backticks

    Returns:
        Rows as lists of Python values (None, int, Decimal, str)
    """
    pattern = re.compile(
        rf"INSERT INTO `{re.escape(table)}`(?:\s*\([^)]*\))?\s+VALUES\s*",
        re.IGNORECASE,
    )
    rows: list[list[Any]] = []
    position = 0
    while match := pattern.search(sql, position):
        parsed, position = _parse_values(sql, match.end())
        rows.extend(parsed)
    return rows


class LegacyPayments(BaseModel):
    """Rows read from the dump: importable records and rows rejected on read."""

    records: list[LegacyPaymentRecord] = Field(default_factory=list)
    rejected: list[ItemResult] = Field(default_factory=list)


def _parse_legacy_date(value: Any) -> date:  # noqa: ANN401
    """Parse a legacy DATE/DATETIME value.

    Raises:
        ValueError: On NULL, MySQL zero dates and unparseable text
    """
    if isinstance(value, date):
        return value
    text = "" if value is None else str(value).strip()
    if not text or text.startswith(_ZERO_DATE):
        msg = "Missing payment date"
        raise ValueError(msg)
    return date.fromisoformat(text[:10])


def _to_record(row: list[Any]) -> LegacyPaymentRecord:
    if len(row) < len(PAYMENT_COLUMNS):
        msg = (
            f"Legacy payment row has {len(row)} columns, "
            f"expected {len(PAYMENT_COLUMNS)}"
        )
        raise ValueError(msg)
    values = dict(zip(PAYMENT_COLUMNS, row, strict=False))
    gross = values["gross"]
    return LegacyPaymentRecord(
        legacy_id=str(values["id"]),
        legacy_entry_ref=str(values["entry_ref"]),
        amount=to_decimal(gross) if gross is not None else ZERO,
        paid_on=_parse_legacy_date(values["paid_on"]),
        notes=values["concept"] or f"Legacy payment #{values['id']}",
    )


def load_legacy_payments(sql: str, table: str = PAYMENT_TABLE) -> LegacyPayments:
    """Map legacy payment rows to records ready for import.

    The gross amount (tax included) is the amount actually paid; the net
    column is ignored. A row that cannot be read (too few columns, missing
    or invalid date) is rejected on its own and reading continues.
    """
    loaded = LegacyPayments()
    for position, row in enumerate(extract_table_rows(sql, table), start=1):
        try:
            loaded.records.append(_to_record(row))
        except ValueError as e:
            row_id = str(row[0]) if row and row[0] is not None else f"#{position}"
            logger.warning("Rejected legacy payment row %s: %s", row_id, e)
            loaded.rejected.append(ItemResult.failed(row_id, str(e)))
    return loaded
