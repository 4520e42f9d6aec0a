"""Reduce raw bank descriptions to a stable merchant key.

"PURCHASE FACEBK *T5HTV8DLT2 650- CA" and "PURCHASE FACEBK *XYZ999 650- CA"
both become "facebk": bank prefixes, reference ids, dates, amounts, phone
fragments, URLs, ACH metadata, long digit runs and a trailing state code are
stripped, then anything that is not a lowercase letter is dropped.

A single cleaning pass can expose new strippable text (a prefix that only
becomes leading once an id before it is removed, a month glued to digits),
so the pass is repeated until the string stops changing. That makes
``normalize_description`` idempotent.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from .constants import (
    ACH_INDN_RX,
    ACH_KEY_VALUE_RX,
    ACH_LABEL_RX,
    ACH_SEC_CODE_RX,
    AMOUNT_RX,
    APOSTROPHE_RX,
    BANK_PREFIX_RX,
    DATE_RX,
    DOMAIN_SUFFIX_RX,
    LONG_DIGITS_RX,
    MONTH_RX,
    NON_ALPHA_RX,
    PHONE_RX,
    REFERENCE_ID_RX,
    TRAILING_STATE_RX,
    URL_RX,
    WHITESPACE_RX,
)

__all__ = ["normalize_description", "tokenize", "normalized_tokens"]

# Order is significant: ACH key/value pairs before reference ids (ids would
# eat "id:" values), dates before amounts and phones.
_STRIP_STEPS = (
    URL_RX,
    DOMAIN_SUFFIX_RX,
    ACH_INDN_RX,
    ACH_KEY_VALUE_RX,
    ACH_LABEL_RX,
    ACH_SEC_CODE_RX,
    REFERENCE_ID_RX,
    DATE_RX,
    AMOUNT_RX,
    PHONE_RX,
    LONG_DIGITS_RX,
)


def _clean_once(text: str) -> str:
    working = text.lower()
    for rx in _STRIP_STEPS:
        working = rx.sub(" ", working)
    working = APOSTROPHE_RX.sub("", working)
    working = NON_ALPHA_RX.sub(" ", working)
    working = MONTH_RX.sub(" ", working)
    working = WHITESPACE_RX.sub(" ", working).strip()
    working = BANK_PREFIX_RX.sub("", working)
    working = TRAILING_STATE_RX.sub("", working)
    return working.strip()


@lru_cache(maxsize=8192)
def normalize_description(desc: str) -> str:
    """Return the merchant key for ``desc`` ("" when nothing survives).

    Non-string input yields "". An empty result means "no pattern" and
    callers must not learn or match on it.
    """
    if not isinstance(desc, str):
        return ""
    current = desc
    while True:
        cleaned = _clean_once(current)
        if cleaned == current:
            return cleaned
        current = cleaned


def tokenize(normalized: str) -> List[str]:
    """Whitespace tokens of an already-normalized string."""
    return normalized.split() if normalized else []


def normalized_tokens(desc: str) -> List[str]:
    return tokenize(normalize_description(desc))
