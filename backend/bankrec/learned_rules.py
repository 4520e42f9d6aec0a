"""Learned merchant rules: user corrections turned into future matches.

When a user manually sets a category, payee or project, the description is
normalized and stored as a rule for the company. New transactions are then
compared against those rules by token overlap.

Two overlap measures are in use:

  * ``fuzzy_match_pattern(desc, pattern)`` divides by the pattern's token
    count (threshold 0.6). It is asymmetric; callers that want symmetry
    check both directions. Used to merge rules on save and to find sibling
    transactions.
  * ``best_learned_rule`` divides by the larger of the two token counts
    (threshold 0.5) and keeps the highest score, first rule winning ties.

Rule patterns are re-normalized at lookup time rather than trusted, so
rules saved by older normalizer versions keep matching.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, NamedTuple, Optional, Sequence

from .constants import FUZZY_MATCH_MIN_RATIO, LEARNED_MATCH_MIN_SCORE, MIN_PATTERN_LENGTH
from .models import LearnedRule, RuleUpdates, Transaction, WriteResult
from .normalize import normalize_description, tokenize
from .store import RuleStore

logger = logging.getLogger(__name__)

__all__ = [
    "RuleMatch",
    "fuzzy_match_pattern",
    "patterns_overlap",
    "best_learned_rule",
    "match_learned_rule",
    "find_sibling_ids",
    "LearnedRuleRepository",
]


class RuleMatch(NamedTuple):
    rule: LearnedRule
    score: float


def fuzzy_match_pattern(description: str, pattern: str) -> bool:
    """True when at least 60% of ``pattern``'s tokens occur in ``description``.

    Both arguments are expected to be normalized already. At least one token
    must match, so an empty pattern never matches.
    """
    pattern_tokens = tokenize(pattern)
    if not pattern_tokens:
        return False
    desc_tokens = set(tokenize(description))
    matches = sum(1 for t in pattern_tokens if t in desc_tokens)
    return matches > 0 and matches / len(pattern_tokens) >= FUZZY_MATCH_MIN_RATIO


def patterns_overlap(a: str, b: str) -> bool:
    """Symmetric form of ``fuzzy_match_pattern``."""
    return fuzzy_match_pattern(a, b) or fuzzy_match_pattern(b, a)


def best_learned_rule(description: str, rules: Iterable[LearnedRule]) -> Optional[RuleMatch]:
    desc_tokens = tokenize(normalize_description(description))
    if not desc_tokens:
        return None
    desc_set = set(desc_tokens)
    best: Optional[RuleMatch] = None
    for rule in rules:
        rule_tokens = tokenize(normalize_description(rule.description_pattern))
        if not rule_tokens:
            continue
        matches = sum(1 for t in rule_tokens if t in desc_set)
        if not matches:
            continue
        score = matches / max(len(rule_tokens), len(desc_tokens))
        if score < LEARNED_MATCH_MIN_SCORE:
            continue
        # strict ">" keeps the first of equally scored rules
        if best is None or score > best.score:
            best = RuleMatch(rule, score)
    return best


def match_learned_rule(description: str, rules: Iterable[LearnedRule]) -> Optional[LearnedRule]:
    hit = best_learned_rule(description, rules)
    return hit.rule if hit else None


def find_sibling_ids(
    transactions: Sequence[Transaction], source_id: str, description: str
) -> List[str]:
    """Ids of other uncategorized transactions whose description overlaps.

    Only the given (currently loaded) transactions are searched.
    """
    source_pattern = normalize_description(description)
    if not source_pattern:
        return []
    siblings: List[str] = []
    for txn in transactions:
        if txn.id == source_id or txn.is_categorized:
            continue
        if patterns_overlap(normalize_description(txn.description), source_pattern):
            siblings.append(txn.id)
    return siblings


class LearnedRuleRepository:
    """Per-company learned rules, cached in memory and written through.

    Memory is updated first and the store afterwards. A failed store write
    is logged and reported through ``WriteResult(persisted=False)``; it never
    raises, so the caller's already-applied UI state stays as it is.
    """

    def __init__(
        self,
        company_id: str,
        store: RuleStore,
        rules: Optional[Iterable[LearnedRule]] = None,
    ):
        self.company_id = company_id
        self._store = store
        self._rules: List[LearnedRule] = list(rules or [])
        self._lock = asyncio.Lock()

    @property
    def rules(self) -> List[LearnedRule]:
        return list(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    async def refresh(self) -> List[LearnedRule]:
        """Replace the cache with the store's rules. Store errors propagate."""
        rules = await self._store.list_rules(self.company_id)
        self._rules = list(rules)
        logger.debug("Loaded %d learned rules for company %s", len(rules), self.company_id)
        return self.rules

    def match(self, description: str) -> Optional[LearnedRule]:
        return match_learned_rule(description, self._rules)

    def best_match(self, description: str) -> Optional[RuleMatch]:
        return best_learned_rule(description, self._rules)

    def _find_index(self, pattern: str) -> Optional[int]:
        for i, rule in enumerate(self._rules):
            existing = normalize_description(rule.description_pattern)
            if existing == pattern or patterns_overlap(pattern, existing):
                return i
        return None

    async def save(self, description: str, updates: RuleUpdates) -> WriteResult:
        """Merge ``updates`` into the matching rule or create a new one.

        Patterns shorter than two characters are too generic to learn and
        leave everything untouched, as does an update that touches nothing.
        """
        pattern = normalize_description(description)
        if len(pattern) < MIN_PATTERN_LENGTH or updates.is_empty():
            return WriteResult.noop()

        async with self._lock:
            idx = self._find_index(pattern)
            if idx is not None:
                existing = self._rules[idx]
                merged = existing.merged(updates)
                self._rules[idx] = merged
                fields = {**updates.touched(), "updated_at": merged.updated_at}
                try:
                    await self._store.update_rule(existing.id, fields)
                except Exception as e:
                    logger.warning("Learned rule %s update not persisted: %s", existing.id, e)
                    return WriteResult(applied=True, persisted=False, error=str(e), rule=merged)
                return WriteResult(applied=True, persisted=True, rule=merged)

            rule = LearnedRule(
                company_id=self.company_id,
                description_pattern=pattern,
                **updates.touched(),
            )
            self._rules.append(rule)
            try:
                stored = await self._store.insert_rule(rule)
            except Exception as e:
                logger.warning("Learned rule for %r not persisted: %s", pattern, e)
                return WriteResult(applied=True, persisted=False, error=str(e), rule=rule)
            if stored is not None and stored.id != rule.id:
                # the store assigned its own id
                self._rules[self._rules.index(rule)] = stored
                rule = stored
            return WriteResult(applied=True, persisted=True, rule=rule)
