"""Keyword-table transaction categorization.

The table is an ordered list of ``CategoryRule(keywords, category)``.
Classification walks it top to bottom and the first rule with a keyword
found in the lowercased description wins, so order encodes precedence:
software before equipment ("apple.com/bill" is a subscription, "apple.com"
a purchase), incoming Zelle before outgoing Zelle, and so on.

Keywords are plain substrings, not regexes. Bank descriptions use
abbreviations ("att*", "sq *", "tst*") that would need escaping anyway. A
hit only counts when the character right after it is not a lowercase
letter, which keeps "mobil" from matching inside "mobile" while still
letting "cafe " or "irs " carry their own trailing space.

Extensibility:
  * Environment variable CATEGORY_RULES_FILE (JSON) replaces the default
    table:  [ {"keywords": ["acme"], "category": "materials"}, ... ]
  * ``register_custom_rule(category, keywords, prepend=False)`` injects
    rules at runtime; custom rules are always evaluated before the table.
  * CUSTOM_CATEGORY_RULES (JSON, same shape plus optional "prepend") is the
    persistence file for runtime rules.

Categories are validated against a ``CategoryLookup`` before any
assignment; ``StaticCategoryLookup`` serves the canonical list.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from threading import RLock
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

import pandas as pd

from .constants import CANONICAL_CATEGORIES
from .models import InvalidCategoryError
from .normalize import normalize_description

logger = logging.getLogger(__name__)

CategoryName = str


class CategoryRule(NamedTuple):
    keywords: Tuple[str, ...]
    category: CategoryName


def _rule(category: CategoryName, keywords: Sequence[str]) -> CategoryRule:
    return CategoryRule(tuple(k.lower() for k in keywords), category)


# Bank descriptions use abbreviations (ATT*, MSFT, SQ *, etc.) so those are
# listed alongside full merchant names.
DEFAULT_CATEGORY_RULES: List[CategoryRule] = [
    _rule("software", [
        "adobe", "figma", "slack", "zoom", "dropbox", "google workspace",
        "google storage", "microsoft 365", "microsoft office", "msft", "github",
        "gitlab", "atlassian", "jira", "notion", "canva", "hubspot", "salesforce",
        "quickbooks", "xero", "freshbooks", "mailchimp", "sendgrid", "twilio",
        "aws", "amazon web services", "azure", "google cloud", "gcloud", "heroku",
        "digital ocean", "digitalocean", "cloudflare", "shopify", "squarespace",
        "wix", "godaddy", "namecheap", "hover", "openai", "anthropic", "vercel", "netlify",
        "supabase", "mongodb", "datadog", "sentry", "intercom", "zendesk",
        "calendly", "docusign", "loom", "miro", "airtable", "zapier", "make.com",
        "grammarly", "1password", "lastpass", "bitwarden", "nordvpn", "expressvpn",
        "chatgpt", "spotify", "apple.com/bill", "icloud", "google *",
        "linkedin premium", "semrush", "ahrefs", "hootsuite", "buffer",
    ]),
    _rule("utilities", [
        "att*", "at&t", "at & t", "verizon", "t-mobile", "tmobile", "sprint",
        "comcast", "xfinity", "spectrum", "cox comm", "centurylink", "lumen",
        "frontier comm", "electric", "gas bill", "water bill", "power company",
        "edison", "pacific gas", "con edison", "duke energy", "dominion energy",
        "southern company", "xcel energy", "internet service", "phone bill",
        "utility payment", "waste management", "republic services",
    ]),
    _rule("travel", [
        "delta air", "united air", "american air", "southwest air", "jetblue",
        "spirit air", "frontier air", "alaska air", "hilton", "marriott", "hyatt",
        "airbnb", "vrbo", "booking.com", "expedia", "hotels.com", "enterprise rent",
        "hertz", "avis", "budget rent", "national car", "turo", "amtrak",
        "greyhound", "tsa precheck", "global entry", "airline", "hotel", "flight",
        "uber trip", "lyft ride",
    ]),
    _rule("vehicle", [
        "shell", "chevron", "exxonmobil", "exxon mobil", "exxon", "mobil",
        "sunoco", "valero", "marathon petro", "speedway", "wawa", "racetrac",
        "circle k", "quiktrip", "loves travel", "pilot flying", "costco gas",
        "sam's gas", "buc-ees", "jiffy lube", "valvoline", "midas", "firestone",
        "goodyear", "discount tire", "autozone", "advance auto", "oreilly auto",
        "o'reilly auto", "napa auto", "car wash", "bp gas", "fuel", "gasoline",
        "arco",
    ]),
    _rule("meals", [
        "doordash", "grubhub", "uber eats", "ubereats", "postmates", "seamless",
        "caviar", "instacart", "starbucks", "dunkin", "mcdonalds", "mcdonald's",
        "chipotle", "chick-fil-a", "panera", "subway", "wendy", "burger king",
        "taco bell", "domino", "pizza hut", "papa john", "olive garden",
        "applebee", "ihop", "waffle house", "five guys", "shake shack",
        "sweetgreen", "cava grill", "panda express", "restaurant", "cafe ",
        "diner", "bistro", "catering", "sq *", "tst*", "toast*",
    ]),
    _rule("office_supplies", [
        "staples", "office depot", "officemax", "uline", "quill.com", "w.b. mason",
        "toner", "ink cartridge", "office supply", "usps", "ups store",
        "fedex office", "stamps.com", "pitney bowes",
    ]),
    _rule("marketing", [
        "meta ads", "facebook ads", "fb *", "facebk", "google ads", "adwords",
        "linkedin ads", "twitter ads", "x ads", "tiktok ads", "bing ads", "yelp ads",
        "thumbtack", "angi leads", "homeadvisor", "facebook business",
        "meta business", "google marketing", "vistaprint", "moo.com", "fiverr",
        "upwork", "99designs", "advertising", "sponsorship", "flyers", "promo",
    ]),
    _rule("insurance", [
        "geico", "state farm", "progressive", "allstate", "liberty mutual", "usaa",
        "nationwide", "farmers ins", "travelers ins", "the hartford", "hiscox",
        "next insurance", "simply business", "general liability", "workers comp",
        "insurance premium", "insurance payment",
    ]),
    _rule("rent", [
        "rent payment", "lease payment", "monthly rent", "office rent",
        "warehouse rent", "storage unit", "public storage", "extra space",
        "cubesmart", "life storage", "regus", "wework", "industrious", "coworking",
    ]),
    _rule("bank_fees", [
        "monthly maintenance fee", "service charge", "overdraft fee", "nsf fee",
        "wire transfer fee", "atm fee", "foreign transaction fee", "account fee",
        "annual fee", "card fee", "statement fee", "bank charge", "bank fee",
        "monthly fee", "analysis charge",
    ]),
    _rule("taxes", [
        "irs ", "eftps", "internal revenue", "tax payment", "estimated tax",
        "state tax", "federal tax", "sales tax", "property tax", "payroll tax",
        "quarterly tax", "annual tax",
    ]),
    _rule("professional_services", [
        "attorney", "law office", "law firm", "legal fee", "legal service", "cpa ",
        "accountant", "accounting fee", "bookkeep", "tax preparation",
        "consultant", "consulting fee", "advisory fee", "audit fee",
    ]),
    _rule("equipment", [
        "apple store", "apple.com", "best buy", "b&h photo", "adorama", "newegg",
        "dell.com", "lenovo", "hp store", "samsung store", "micro center", "cdw ",
        "tiger direct", "monoprice", "amazon.com",
    ]),
    _rule("payroll", [
        "payroll", "gusto", "adp ", "paychex", "paylocity", "rippling",
        "justworks", "square payroll", "wage payment", "salary payment",
        "employee pay",
    ]),
    _rule("loan_payment", [
        "loan payment", "sba loan", "line of credit", "credit line",
        "mortgage payment", "principal payment", "interest payment", "kabbage",
        "ondeck", "bluevine", "fundbox", "lendio",
    ]),
    _rule("materials", [
        "home depot", "lowes", "lowe's", "menards", "ace hardware",
        "tractor supply", "grainger", "fastenal", "lumber", "supply house",
        "plumbing supply", "electrical supply", "building material",
    ]),
    # Incoming person-to-person payments are income; must precede outgoing.
    _rule("income", ["zelle from", "zelle payment from"]),
    _rule("professional_services", [
        "zelle payment", "zelle to", "pmnt sent", "venmo", "cashapp", "cash app",
        "paypal",
    ]),
    # Internal transfers between the company's own accounts only.
    _rule("transfer", [
        "transfer to savings", "transfer to checking", "transfer from savings",
        "transfer from checking", "online transfer to chk", "online transfer to sav",
        "mobile transfer to chk", "mobile transfer to sav", "transfer to chk",
        "transfer to sav", "internal transfer", "account transfer",
    ]),
    _rule("refund", ["refund", "credit memo", "chargeback", "reversal"]),
    _rule("income", [
        "deposit from", "client payment", "invoice payment", "payment received",
        "incoming wire", "incoming ach", "check deposit",
    ]),
]


_custom_rules: List[CategoryRule] = []  # user/runtime injected
_custom_rules_lock = RLock()
_custom_rules_persist_path: str | None = None
_custom_categories: List[CategoryName] = []


# ---------------- Category lookup ---------------- #
class CategoryLookup(Protocol):
    """Source of truth for which category values may be assigned."""

    def is_valid(self, category: str) -> bool: ...

    def categories(self) -> List[str]: ...


class StaticCategoryLookup:
    """Canonical categories plus any extras (custom company categories)."""

    def __init__(self, extra: Iterable[str] = ()):
        self._categories: List[str] = list(CANONICAL_CATEGORIES)
        for cat in list(extra) + _custom_categories:
            if cat not in self._categories:
                self._categories.append(cat)

    def is_valid(self, category: str) -> bool:
        return category in self._categories

    def categories(self) -> List[str]:
        return list(self._categories)


def validate_category(category: str, lookup: Optional[CategoryLookup] = None) -> str:
    """Return ``category`` unchanged or raise InvalidCategoryError."""
    lookup = lookup or StaticCategoryLookup()
    if not isinstance(category, str) or not lookup.is_valid(category):
        raise InvalidCategoryError(str(category))
    return category


def add_custom_category(category: CategoryName) -> None:
    """Make ``category`` assignable in addition to the canonical list."""
    with _custom_rules_lock:
        if category not in CANONICAL_CATEGORIES and category not in _custom_categories:
            _custom_categories.append(category)


# ---------------- Rule table ---------------- #
def register_custom_rule(
    category: CategoryName, keywords: Sequence[str] | str, prepend: bool = False
) -> CategoryRule:
    """Register a keyword rule at runtime.

    Args:
        category: A known category (canonical or added via add_custom_category).
        keywords: One keyword or a list; matched case-insensitively.
        prepend:  If True the rule is evaluated before earlier custom rules.
    """
    validate_category(category)
    if isinstance(keywords, str):
        keywords = [keywords]
    cleaned = [k for k in keywords if isinstance(k, str) and k.strip()]
    if not cleaned:
        raise ValueError("A custom rule needs at least one non-empty keyword")
    rule = _rule(category, cleaned)
    with _custom_rules_lock:
        if prepend:
            _custom_rules.insert(0, rule)
        else:
            _custom_rules.append(rule)
        _compile_rules.cache_clear()
    return rule


def _rules_from_json(data: Any) -> List[CategoryRule]:
    rules: List[CategoryRule] = []
    if not isinstance(data, list):
        return rules
    for item in data:
        if not isinstance(item, dict):
            continue
        cat = item.get("category")
        kws = item.get("keywords")
        if isinstance(cat, str) and isinstance(kws, list):
            keywords = [k for k in kws if isinstance(k, str) and k]
            if keywords:
                rules.append(_rule(cat, keywords))
    return rules


def _load_overrides_from_file() -> List[CategoryRule]:
    path = os.environ.get("CATEGORY_RULES_FILE")
    if not path or not os.path.isfile(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            return _rules_from_json(json.load(f))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable CATEGORY_RULES_FILE %s: %s", path, e)
        return []


@lru_cache(maxsize=1)
def _compile_rules() -> Tuple[CategoryRule, ...]:
    table = _load_overrides_from_file() or DEFAULT_CATEGORY_RULES
    with _custom_rules_lock:
        return tuple(_custom_rules) + tuple(table)


def _keyword_hit(desc: str, keyword: str) -> bool:
    # only the first occurrence is considered
    idx = desc.find(keyword)
    if idx == -1:
        return False
    end = idx + len(keyword)
    return end >= len(desc) or not ("a" <= desc[end] <= "z")


def _first_match(desc: str) -> Optional[Tuple[int, CategoryRule, str]]:
    if not isinstance(desc, str) or not desc.strip():
        return None
    lowered = desc.lower()
    for idx, rule in enumerate(_compile_rules()):
        for keyword in rule.keywords:
            if _keyword_hit(lowered, keyword):
                return idx, rule, keyword
    return None


def match_category(desc: str) -> Optional[CategoryName]:
    """Return the category of the first matching rule, or None."""
    hit = _first_match(desc)
    return hit[1].category if hit else None


def categorize_with_metadata(desc: str) -> Dict[str, Any]:
    """Return categorization details for a single description.

    Keys: description, category, source ("keyword" or None), matched_keyword,
    rule_index (position in the effective table, custom rules first).
    """
    info: Dict[str, Any] = {
        "description": desc,
        "category": None,
        "source": None,
        "matched_keyword": None,
        "rule_index": None,
    }
    hit = _first_match(desc)
    if hit:
        idx, rule, keyword = hit
        info.update(
            category=rule.category,
            source="keyword",
            matched_keyword=keyword,
            rule_index=idx,
        )
    return info


def add_categories(df: pd.DataFrame, column: str = "description") -> pd.DataFrame:
    """Add a ``keyword_category`` column to a transactions frame.

    Keeps the input intact; returns it unchanged when ``column`` is absent.
    """
    if df is None or df.empty or column not in df.columns:
        return df
    out = df.copy()
    out["keyword_category"] = pd.Series(
        [match_category(d) for d in out[column].tolist()], index=out.index, dtype=object
    )
    return out


# ---------------- Persistent custom rules ---------------- #
def load_persistent_custom_rules(path: str | None = None) -> int:
    """Load custom keyword rules from a JSON file and register them.

    File format:
        [ {"category": "meals", "keywords": ["joe's grill"], "prepend": true}, ... ]
    The path can be provided here or via env CUSTOM_CATEGORY_RULES (takes precedence).
    Returns the number of rules registered.
    """
    global _custom_rules_persist_path
    use_path = os.environ.get("CUSTOM_CATEGORY_RULES") or path
    if not use_path or not os.path.isfile(use_path):
        return 0
    try:
        with open(use_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read custom rules from %s: %s", use_path, e)
        return 0
    added = 0
    for item in data if isinstance(data, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            register_custom_rule(
                item.get("category"), item.get("keywords") or [], prepend=bool(item.get("prepend"))
            )
            added += 1
        except (InvalidCategoryError, ValueError) as e:
            logger.warning("Skipping custom rule %r: %s", item, e)
    _custom_rules_persist_path = use_path
    return added


def add_persistent_custom_rule(
    category: CategoryName, keywords: Sequence[str] | str, prepend: bool = False
) -> bool:
    """Register a custom rule and write all custom rules back to disk.

    If no persistence path has been loaded, this only registers in memory and
    returns False.
    """
    register_custom_rule(category, keywords, prepend=prepend)
    if not _custom_rules_persist_path:
        return False
    with _custom_rules_lock:
        payload = [
            {"category": r.category, "keywords": list(r.keywords)} for r in _custom_rules
        ]
    try:
        with open(_custom_rules_persist_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
    except OSError as e:
        logger.warning("Could not persist custom rules to %s: %s", _custom_rules_persist_path, e)
        return False
    return True


def list_custom_rules() -> List[CategoryRule]:
    with _custom_rules_lock:
        return list(_custom_rules)


def reload_rules() -> int:
    """Clear the compiled table cache and rebuild it.

    Returns the number of rules in the effective table.
    """
    _compile_rules.cache_clear()
    return len(_compile_rules())


def clear_all_caches() -> Dict[str, int]:
    """Drop custom rules/categories and cached tables. Safe to call any time."""
    global _custom_rules_persist_path
    with _custom_rules_lock:
        custom_count = len(_custom_rules)
        _custom_rules.clear()
        _custom_categories.clear()
        _custom_rules_persist_path = None
    _compile_rules.cache_clear()
    normalized = normalize_description.cache_info().currsize
    normalize_description.cache_clear()
    return {"custom_rules_cleared": custom_count, "normalized_cache_cleared": normalized}


__all__ = [
    "CategoryRule",
    "CategoryLookup",
    "StaticCategoryLookup",
    "DEFAULT_CATEGORY_RULES",
    "CANONICAL_CATEGORIES",
    "match_category",
    "categorize_with_metadata",
    "add_categories",
    "validate_category",
    "add_custom_category",
    "register_custom_rule",
    "load_persistent_custom_rules",
    "add_persistent_custom_rule",
    "list_custom_rules",
    "reload_rules",
    "clear_all_caches",
]
