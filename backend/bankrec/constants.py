"""Shared regexes, token tables and thresholds for the categorization core.

Everything here is plain data: compiled patterns used by the normalizer,
the canonical category list, and the numeric knobs of the learned-rule
matcher and reconciliation tracker. A handful of values can be overridden
through environment variables (read once at import time).
"""

from __future__ import annotations

import os
import re
from typing import List, Sequence

# ---------------- Categories ---------------- #
# Order matters only for display; classification precedence lives in the
# keyword table (categorize.DEFAULT_CATEGORY_RULES).
CANONICAL_CATEGORIES: List[str] = [
    "owner_draw",
    "owner_contribution",
    "payroll",
    "rent",
    "utilities",
    "insurance",
    "office_supplies",
    "software",
    "equipment",
    "travel",
    "meals",
    "vehicle",
    "professional_services",
    "marketing",
    "project_expense",
    "materials",
    "subcontractor",
    "freelancer",
    "taxes",
    "bank_fees",
    "loan_payment",
    "income",
    "refund",
    "transfer",
    "personal",
    "other",
]

# ---------------- Learned rule matching ---------------- #
FUZZY_MATCH_MIN_RATIO = 0.6
LEARNED_MATCH_MIN_SCORE = 0.5
MIN_PATTERN_LENGTH = 2

# ---------------- Reconciliation ---------------- #
RECONCILE_TOLERANCE = float(os.getenv("RECONCILE_TOLERANCE", "0.01"))
AUTO_MATCH_MIN_CONFIDENCE = 70
SUGGEST_MIN_CONFIDENCE = 30
MEDIUM_CONFIDENCE = 50

# ---------------- Normalization ---------------- #
URL_RX = re.compile(r"https?://\S+|\bwww\.")
# Keep the domain label ("amazon.com/bill" -> "amazon"), drop the suffix and path.
DOMAIN_SUFFIX_RX = re.compile(
    r"\.(?:com|net|org|io|co|us|biz|info|app|ai)\b(?:/\S*)?"
)

# ACH / wire metadata. INDN carries a free-text name that runs up to the
# next key or SEC code.
ACH_INDN_RX = re.compile(
    r"\bindn\s*:.*?(?=\s+(?:co\s+id|id|des|trn|ref)\s*:|\s+(?:ppd|ccd|web|tel|ctx)\b|$)"
)
ACH_KEY_VALUE_RX = re.compile(
    r"\b(?:co\s+id|id|trn|ref|conf|confirmation|imad|omad|fed\s*ref|bnf\s*acct)\s*:\s*\S+"
)
ACH_LABEL_RX = re.compile(
    r"\b(?:des|orig\s+co\s+name|co\s+name|co\s+entry\s+descr|bnf|orig|sec)\s*:"
)
ACH_SEC_CODE_RX = re.compile(r"\b(?:ppd|ccd|web|tel|ctx)\b")

# *T5HTV8DLT2, #1234, US*2K4AB1. A marker followed by a letters-only word
# ("SQ *BLUE BOTTLE") is a merchant name, not an id.
REFERENCE_ID_RX = re.compile(r"[*#]\s*(?=[a-z0-9-]*\d)[a-z0-9-]+")

DATE_RX = re.compile(
    r"\b\d{4}-\d{1,2}-\d{1,2}\b|\b\d{1,2}[/-]\d{1,2}(?:[/-]\d{2,4})?\b"
)
AMOUNT_RX = re.compile(r"-?\$\s?\d[\d,]*(?:\.\d{1,2})?|\b\d[\d,]*\.\d{2}\b")
PHONE_RX = re.compile(
    r"\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b|\b\d{3}-(?=\s|$)"
)
LONG_DIGITS_RX = re.compile(r"\d{4,}")
APOSTROPHE_RX = re.compile(r"['`’]")
NON_ALPHA_RX = re.compile(r"[^a-z\s]+")
WHITESPACE_RX = re.compile(r"\s+")

MONTH_NAMES: Sequence[str] = (
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept",
    "oct", "nov", "dec",
)
MONTH_RX = re.compile(r"\b(?:" + "|".join(MONTH_NAMES) + r")\b")

# Longest first so "purchase authorized on" wins over "purchase".
BANK_PREFIXES: Sequence[str] = sorted(
    (
        "purchase authorized on",
        "purchase return authorized on",
        "recurring payment authorized on",
        "debit card purchase",
        "pos purchase",
        "pos debit",
        "visa purchase",
        "card purchase",
        "purchase",
        "checkcard",
        "check card",
        "debit card",
        "dbt crd",
        "pos",
        "recurring payment",
        "recurring",
        "preauthorized debit",
        "electronic payment",
        "ach debit",
        "ach credit",
        "ach",
    ),
    key=len,
    reverse=True,
)
BANK_PREFIX_RX = re.compile(
    r"^(?:(?:" + "|".join(re.escape(p) for p in BANK_PREFIXES) + r")(?:\s+|$))+"
)

US_STATE_CODES: Sequence[str] = (
    "al", "ak", "az", "ar", "ca", "co", "ct", "de", "dc", "fl", "ga", "hi",
    "id", "il", "in", "ia", "ks", "ky", "la", "me", "md", "ma", "mi", "mn",
    "ms", "mo", "mt", "ne", "nv", "nh", "nj", "nm", "ny", "nc", "nd", "oh",
    "ok", "or", "pa", "ri", "sc", "sd", "tn", "tx", "ut", "vt", "va", "wa",
    "wv", "wi", "wy",
)
TRAILING_STATE_RX = re.compile(r"\s+(?:" + "|".join(US_STATE_CODES) + r")$")


__all__ = [
    "CANONICAL_CATEGORIES",
    "FUZZY_MATCH_MIN_RATIO",
    "LEARNED_MATCH_MIN_SCORE",
    "MIN_PATTERN_LENGTH",
    "RECONCILE_TOLERANCE",
    "AUTO_MATCH_MIN_CONFIDENCE",
    "SUGGEST_MIN_CONFIDENCE",
    "MEDIUM_CONFIDENCE",
]
