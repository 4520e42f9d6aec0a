"""Small shared helpers: statement amount parsing and DataFrame conversion."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, List

import pandas as pd

if TYPE_CHECKING:
    from .models import Transaction

_AMOUNT_CORE_RX = re.compile(r"\d+(?:\.\d+)?")

TRANSACTION_COLUMNS = [
    "id",
    "transaction_date",
    "description",
    "amount",
    "category",
    "category_source",
    "payee_id",
    "project_id",
    "match_status",
    "is_cleared",
]


def normalize_number(raw: str | None) -> float | None:
    """Parse a statement amount token into a signed float.

    Accepts "$1,204.00", "(12.50)", "12.50-" and "-12.5". Returns None for
    anything that does not look like money (more than two decimals, a bare
    integer longer than seven digits, or over a billion).
    """
    if not raw:
        return None
    token = raw.strip()
    neg = False
    if token.endswith("-") and token.count("-") == 1:
        neg = True
        token = token[:-1]
    if token.startswith("(") and token.endswith(")"):
        neg = True
        token = token[1:-1]
    core = token.replace("$", "").replace(",", "").strip()
    if core.startswith("-"):
        neg = True
        core = core[1:]
    elif core.startswith("+"):
        core = core[1:]
    if not _AMOUNT_CORE_RX.fullmatch(core):
        return None
    if "." not in core and len(core) > 7:
        return None
    if "." in core:
        _int_part, frac_part = core.split(".", 1)
        if not (1 <= len(frac_part) <= 2):
            return None
    v = float(core)
    if v > 1_000_000_000:
        return None
    return -v if neg else v


def transactions_frame(transactions: Iterable["Transaction"]) -> pd.DataFrame:
    """Flatten transactions into a DataFrame with enum columns as strings."""
    rows = [t.model_dump(mode="json", include=set(TRANSACTION_COLUMNS)) for t in transactions]
    if not rows:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)
    df = pd.DataFrame(rows, columns=TRANSACTION_COLUMNS)
    return ensure_dates(df, "transaction_date")


def df_to_records(df: pd.DataFrame) -> List[dict]:
    """Convert a DataFrame to JSON-serializable records.

    - Converts pandas NA to None
    - Converts date/datetime objects to ISO strings when possible
    """
    if df is None or df.empty:
        return []
    out = df.to_dict(orient="records")
    for rec in out:
        for k, v in list(rec.items()):
            if isinstance(v, (list, dict)):
                continue
            if pd.isna(v):
                rec[k] = None
            elif hasattr(v, "isoformat"):
                rec[k] = v.isoformat()
            elif hasattr(v, "item"):
                # numpy scalars
                rec[k] = v.item()
    return out


def ensure_dates(df: pd.DataFrame, date_col: str = "date") -> pd.DataFrame:
    """Return a DataFrame where ``date_col`` is coerced to datetime (copy on write).

    If the column is absent, the original frame is returned unchanged.
    """
    if date_col in df.columns and not pd.api.types.is_datetime64_any_dtype(
        df[date_col]
    ):
        df = df.copy()
        df[date_col] = pd.to_datetime(df[date_col], errors="coerce")
    return df


__all__ = [
    "normalize_number",
    "transactions_frame",
    "df_to_records",
    "ensure_dates",
    "TRANSACTION_COLUMNS",
]
