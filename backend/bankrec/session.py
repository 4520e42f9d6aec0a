"""One loaded statement and the handlers that act on it.

A ``CategorizationSession`` is what a bank-statements screen holds while a
statement is open: the transactions, the company's learned rules, the
reconciliation tracker, and the collaborators used to persist edits and
toast the user.

Write semantics differ by who triggered the write:

  * Direct user edits (category, payee, project, match status) are applied
    in memory first, then persisted. A failed write is toasted and reported
    in the result; memory is not rolled back.
  * Follow-up work (learning a rule, sibling propagation, bulk
    auto-categorization) is best effort. Writes run concurrently, failures
    are logged only, and partial success is kept.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .categorize import CategoryLookup, StaticCategoryLookup, categorize_with_metadata, validate_category
from .learned_rules import LearnedRuleRepository, find_sibling_ids
from .models import (
    CategorySource,
    Expense,
    InvalidCategoryError,
    Invoice,
    ManualUpdateResult,
    MatchCandidate,
    MatchStatus,
    MatchSuggestion,
    ReconciliationSummary,
    RuleUpdates,
    Statement,
    Suggestion,
    Transaction,
    WriteResult,
)
from .reconcile import (
    ReconciliationTracker,
    auto_match,
    calculate_summary,
    candidate_fields,
    reconcile_against_expenses,
)
from .store import LoggingNotifier, Notifier, RuleStore, StatementStore, TransactionStore

logger = logging.getLogger(__name__)

__all__ = ["CategorizationSession", "suggest_category"]


def suggest_category(
    description: str,
    rules: Optional[LearnedRuleRepository],
    categories: CategoryLookup,
) -> Optional[Suggestion]:
    """Learned rule first, keyword table second.

    A learned rule without a (valid) category still contributes its
    payee/project; the category then comes from the keyword table.
    """
    def valid(category: Optional[str]) -> bool:
        return category is not None and categories.is_valid(category)

    hit = rules.best_match(description) if rules is not None else None
    keyword = categorize_with_metadata(description)
    keyword_category = keyword["category"] if valid(keyword["category"]) else None
    if hit is not None:
        rule = hit.rule
        if rule.category is not None and not valid(rule.category):
            logger.warning("Learned rule %s has unknown category %r", rule.id, rule.category)
        category = rule.category if valid(rule.category) else keyword_category
        if category or rule.payee_id or rule.project_id:
            return Suggestion(
                category=category,
                payee_id=rule.payee_id,
                project_id=rule.project_id,
                source="learned",
                rule_id=rule.id,
                score=hit.score,
            )
    if keyword_category:
        return Suggestion(category=keyword_category, source="keyword")
    return None


class CategorizationSession:
    def __init__(
        self,
        company_id: str,
        statement: Statement,
        transactions: Iterable[Transaction],
        store: TransactionStore,
        rules: LearnedRuleRepository,
        notifier: Optional[Notifier] = None,
        categories: Optional[CategoryLookup] = None,
    ):
        self.company_id = company_id
        self.store = store
        self.rules = rules
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.categories: CategoryLookup = categories or StaticCategoryLookup()
        self.tracker = ReconciliationTracker(statement, transactions)

    @classmethod
    async def load(
        cls,
        company_id: str,
        statement: Statement,
        transactions: Iterable[Transaction],
        store: TransactionStore,
        rule_store: RuleStore,
        notifier: Optional[Notifier] = None,
        categories: Optional[CategoryLookup] = None,
    ) -> "CategorizationSession":
        """Build a session and pull the company's learned rules.

        A failed rule load leaves the session usable with no learned rules.
        """
        repo = LearnedRuleRepository(company_id, rule_store)
        try:
            await repo.refresh()
        except Exception as e:
            logger.warning("Learned rules for company %s not loaded: %s", company_id, e)
        return cls(company_id, statement, transactions, store, repo, notifier, categories)

    # ---------------- State ---------------- #
    @property
    def statement(self) -> Statement:
        return self.tracker.statement

    @property
    def transactions(self) -> List[Transaction]:
        return self.tracker.transactions

    def get(self, transaction_id: str) -> Transaction:
        return self.tracker.get(transaction_id)

    def _replace(self, txn: Transaction) -> None:
        self.tracker.replace_transaction(txn)

    # ---------------- Suggestions ---------------- #
    def suggest(self, txn: Transaction) -> Optional[Suggestion]:
        return suggest_category(txn.description, self.rules, self.categories)

    async def _persist_many(self, fields_by_id: Dict[str, Dict[str, Any]], label: str) -> List[str]:
        """Write concurrently; return the ids whose write failed."""
        ids = list(fields_by_id)
        results = await asyncio.gather(
            *(self.store.update_transaction(tid, fields_by_id[tid]) for tid in ids),
            return_exceptions=True,
        )
        failed = [tid for tid, r in zip(ids, results) if isinstance(r, BaseException)]
        if failed:
            logger.warning("%s: %d of %d writes failed", label, len(failed), len(ids))
            for tid, r in zip(ids, results):
                if isinstance(r, BaseException):
                    logger.warning("%s: transaction %s not persisted: %s", label, tid, r)
        return failed

    def _bulk_result(self, ids: List[str], failed: List[str]) -> WriteResult:
        if not ids:
            return WriteResult.noop()
        return WriteResult(
            applied=True,
            persisted=not failed,
            error=f"{len(failed)} of {len(ids)} writes failed" if failed else None,
            transaction_ids=ids,
            failed_ids=failed,
        )

    async def auto_categorize_all(self) -> WriteResult:
        """Categorize every uncategorized transaction that has a suggestion."""
        fields_by_id: Dict[str, Dict[str, Any]] = {}
        for txn in self.transactions:
            if txn.is_categorized:
                continue
            suggestion = self.suggest(txn)
            if suggestion is None or suggestion.category is None:
                continue
            fields: Dict[str, Any] = {
                "category": suggestion.category,
                "category_source": CategorySource.AUTO,
            }
            if suggestion.payee_id and not txn.payee_id:
                fields["payee_id"] = suggestion.payee_id
            if suggestion.project_id and not txn.project_id:
                fields["project_id"] = suggestion.project_id
            self._replace(txn.with_updates(**fields))
            fields_by_id[txn.id] = fields
        failed = await self._persist_many(fields_by_id, "auto-categorize")
        logger.info(
            "Auto-categorized %d transactions for statement %s", len(fields_by_id), self.statement.id
        )
        return self._bulk_result(list(fields_by_id), failed)

    # ---------------- Direct edits ---------------- #
    async def _persist_direct(self, txn: Transaction, fields: Dict[str, Any]) -> WriteResult:
        self._replace(txn.with_updates(**fields))
        try:
            await self.store.update_transaction(txn.id, fields)
        except Exception as e:
            logger.error("Update of transaction %s failed: %s", txn.id, e)
            self.notifier.error("Failed to update transaction")
            return WriteResult(
                applied=True, persisted=False, error=str(e), transaction_ids=[txn.id], failed_ids=[txn.id]
            )
        return WriteResult(applied=True, persisted=True, transaction_ids=[txn.id])

    async def apply_manual_update(self, transaction_id: str, updates: RuleUpdates) -> ManualUpdateResult:
        """User set category/payee/project: write, learn, propagate.

        Learning and propagation only follow a successful write.
        """
        txn = self.get(transaction_id)
        if updates.is_empty():
            return ManualUpdateResult(transaction=WriteResult.noop())
        if updates.category is not None:
            validate_category(updates.category, self.categories)

        fields: Dict[str, Any] = dict(updates.touched())
        if updates.category is not None:
            fields["category_source"] = CategorySource.MANUAL
        direct = await self._persist_direct(txn, fields)
        if not direct.persisted:
            return ManualUpdateResult(transaction=direct)

        rule = await self.rules.save(txn.description, updates)
        siblings = await self.apply_sibling_rules(transaction_id, txn.description, updates)
        return ManualUpdateResult(transaction=direct, rule=rule, siblings=siblings)

    async def update_fields(
        self,
        transaction_id: str,
        category: Optional[str] = None,
        payee_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> ManualUpdateResult:
        return await self.apply_manual_update(
            transaction_id, RuleUpdates(category=category, payee_id=payee_id, project_id=project_id)
        )

    async def set_category(self, transaction_id: str, category: Optional[str]) -> ManualUpdateResult:
        if category is None:
            return ManualUpdateResult(transaction=await self.clear_category(transaction_id))
        return await self.apply_manual_update(transaction_id, RuleUpdates(category=category))

    async def set_payee(self, transaction_id: str, payee_id: str) -> ManualUpdateResult:
        return await self.apply_manual_update(transaction_id, RuleUpdates(payee_id=payee_id))

    async def set_project(self, transaction_id: str, project_id: str) -> ManualUpdateResult:
        return await self.apply_manual_update(transaction_id, RuleUpdates(project_id=project_id))

    async def clear_category(self, transaction_id: str) -> WriteResult:
        txn = self.get(transaction_id)
        return await self._persist_direct(txn, {"category": None, "category_source": None})

    async def apply_ai_category(self, transaction_id: str, category: str) -> WriteResult:
        """Record a category produced by the external classifier."""
        txn = self.get(transaction_id)
        try:
            validate_category(category, self.categories)
        except InvalidCategoryError:
            logger.warning("Discarding AI category %r for transaction %s", category, transaction_id)
            raise
        return await self._persist_direct(
            txn, {"category": category, "category_source": CategorySource.AI}
        )

    async def apply_sibling_rules(
        self, source_id: str, description: str, updates: RuleUpdates
    ) -> WriteResult:
        """Copy a manual edit onto uncategorized look-alikes in this statement."""
        touched = updates.touched()
        if not touched:
            return WriteResult.noop()
        fields: Dict[str, Any] = dict(touched)
        if "category" in fields:
            fields["category_source"] = CategorySource.AUTO
        ids = find_sibling_ids(self.transactions, source_id, description)
        fields_by_id: Dict[str, Dict[str, Any]] = {}
        for tid in ids:
            self._replace(self.get(tid).with_updates(**fields))
            fields_by_id[tid] = dict(fields)
        failed = await self._persist_many(fields_by_id, "sibling propagation")
        if ids:
            logger.info("Propagated %s from %s to %d siblings", sorted(touched), source_id, len(ids))
        return self._bulk_result(ids, failed)

    # ---------------- Matching ---------------- #
    async def set_match_status(self, transaction_id: str, status: MatchStatus) -> WriteResult:
        txn = self.get(transaction_id)
        return await self._persist_direct(txn, {"match_status": status})

    async def ignore(self, transaction_id: str) -> WriteResult:
        return await self.set_match_status(transaction_id, MatchStatus.IGNORED)

    async def match_transaction(self, transaction_id: str, candidate: MatchCandidate) -> WriteResult:
        txn = self.get(transaction_id)
        return await self._persist_direct(txn, dict(candidate_fields(candidate)))

    async def auto_match(
        self, expenses: Sequence[Expense], invoices: Sequence[Invoice]
    ) -> List[MatchSuggestion]:
        """Match confident candidates and flag the rest for review (best effort)."""
        before = {t.id: t for t in self.transactions}
        updated, suggestions = auto_match(self.transactions, expenses, invoices)
        fields_by_id: Dict[str, Dict[str, Any]] = {}
        for txn in updated:
            old = before[txn.id]
            if txn == old:
                continue
            self._replace(txn)
            fields_by_id[txn.id] = {
                k: getattr(txn, k)
                for k in ("match_status", "matched_expense_id", "matched_invoice_id")
                if getattr(txn, k) != getattr(old, k)
            }
        await self._persist_many(fields_by_id, "auto-match")
        return suggestions

    async def reconcile_expenses(self, expenses: Sequence[Expense]) -> WriteResult:
        """Exact-amount pass against expenses; flags same-day mismatches as discrepancies."""
        fields_by_id: Dict[str, Dict[str, Any]] = {}
        for update in reconcile_against_expenses(self.transactions, expenses):
            fields: Dict[str, Any] = {
                "matched_expense_id": update.expense_id,
                "match_status": update.match_status,
                "match_notes": update.notes,
            }
            self._replace(self.get(update.transaction_id).with_updates(**fields))
            fields_by_id[update.transaction_id] = fields
        failed = await self._persist_many(fields_by_id, "expense reconciliation")
        logger.info(
            "Expense pass on statement %s updated %d transactions", self.statement.id, len(fields_by_id)
        )
        return self._bulk_result(list(fields_by_id), failed)

    # ---------------- Reconciliation ---------------- #
    def summary(
        self, expenses: Iterable[Expense] = (), invoices: Iterable[Invoice] = ()
    ) -> ReconciliationSummary:
        return calculate_summary(
            self.transactions, self.statement.ending_balance, expenses, invoices
        )

    async def finish_reconciliation(
        self, statement_store: StatementStore, confirm_unbalanced: bool = False
    ) -> Statement:
        return await self.tracker.finish(
            self.store, statement_store, self.notifier, confirm_unbalanced=confirm_unbalanced
        )
