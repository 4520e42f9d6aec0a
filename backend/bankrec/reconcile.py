"""Statement reconciliation.

Two independent views of the same statement:

* ``ReconciliationTracker`` - the manual flow. The user ticks transactions
  as cleared; the cleared balance (beginning balance plus cleared deposits
  minus cleared withdrawals) is compared with the bank's ending balance at
  cent tolerance. Finishing stamps every cleared transaction as matched and
  moves the statement to "reconciled". An unbalanced finish needs explicit
  confirmation.
* ``calculate_summary`` - a coarse status report derived only from each
  transaction's ``match_status`` and sign.

The matching helpers (``find_matches``, ``auto_match``,
``reconcile_against_expenses``) produce the match statuses that the
summary counts: scored candidates against expenses and paid invoices, and
the exact-amount / same-date pass that flags discrepancies.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

import pandas as pd

from .constants import (
    AUTO_MATCH_MIN_CONFIDENCE,
    MEDIUM_CONFIDENCE,
    RECONCILE_TOLERANCE,
    SUGGEST_MIN_CONFIDENCE,
)
from .models import (
    Expense,
    Invoice,
    MatchCandidate,
    MatchStatus,
    MatchSuggestion,
    ReconciliationError,
    ReconciliationSummary,
    Statement,
    StatementStatus,
    Transaction,
    TransactionNotFoundError,
    UnbalancedReconciliationError,
    utcnow,
)
from .store import Notifier, StatementStore, TransactionStore
from .utils import transactions_frame

logger = logging.getLogger(__name__)

__all__ = [
    "ReconciliationTracker",
    "cleared_balance",
    "calculate_summary",
    "find_matches",
    "auto_match",
    "candidate_fields",
    "ExpenseMatchUpdate",
    "reconcile_against_expenses",
    "register_frame",
]


def cleared_balance(beginning_balance: float, cleared: Iterable[Transaction]) -> float:
    deposits = 0.0
    withdrawals = 0.0
    for txn in cleared:
        if txn.amount > 0:
            deposits += txn.amount
        elif txn.amount < 0:
            withdrawals += abs(txn.amount)
    return round(beginning_balance + deposits - withdrawals, 2)


class ReconciliationTracker:
    """Cleared flags and balance arithmetic for one statement."""

    def __init__(
        self,
        statement: Statement,
        transactions: Iterable[Transaction],
        tolerance: float = RECONCILE_TOLERANCE,
    ):
        self.statement = statement
        self.tolerance = tolerance
        self._transactions: Dict[str, Transaction] = {t.id: t for t in transactions}
        self._cleared: Set[str] = {t.id for t in self._transactions.values() if t.is_cleared}

    @property
    def transactions(self) -> List[Transaction]:
        return list(self._transactions.values())

    @property
    def cleared_ids(self) -> Set[str]:
        return set(self._cleared)

    def get(self, transaction_id: str) -> Transaction:
        try:
            return self._transactions[transaction_id]
        except KeyError:
            raise TransactionNotFoundError(transaction_id) from None

    def set_cleared(self, transaction_id: str, cleared: bool = True) -> None:
        self.get(transaction_id)
        if cleared:
            self._cleared.add(transaction_id)
        else:
            self._cleared.discard(transaction_id)

    def toggle_cleared(self, transaction_id: str) -> bool:
        """Flip the cleared flag; returns the new state."""
        new_state = transaction_id not in self._cleared
        self.set_cleared(transaction_id, new_state)
        return new_state

    def clear_all(self) -> None:
        self._cleared = set(self._transactions)

    def unclear_all(self) -> None:
        self._cleared = set()

    def replace_transaction(self, txn: Transaction) -> None:
        """Keep the tracker in step with edits made elsewhere (categories etc.)."""
        self.get(txn.id)
        self._transactions[txn.id] = txn

    @property
    def cleared_transactions(self) -> List[Transaction]:
        return [t for tid, t in self._transactions.items() if tid in self._cleared]

    @property
    def cleared_balance(self) -> float:
        return cleared_balance(self.statement.beginning_balance, self.cleared_transactions)

    @property
    def difference(self) -> float:
        return round(self.statement.ending_balance - self.cleared_balance, 2)

    @property
    def is_balanced(self) -> bool:
        return abs(self.statement.ending_balance - self.cleared_balance) < self.tolerance

    async def finish(
        self,
        transaction_store: TransactionStore,
        statement_store: StatementStore,
        notifier: Optional[Notifier] = None,
        confirm_unbalanced: bool = False,
        now: Optional[datetime] = None,
    ) -> Statement:
        """Stamp cleared transactions as matched and reconcile the statement.

        Raises UnbalancedReconciliationError (nothing written) when the
        balance is off and ``confirm_unbalanced`` is False, and
        ReconciliationError when a write fails; in both cases the statement
        keeps its status.
        """
        if not self.is_balanced and not confirm_unbalanced:
            raise UnbalancedReconciliationError(self.difference)
        if not self.statement.can_transition(StatementStatus.RECONCILED):
            raise ReconciliationError(
                f"Statement {self.statement.id} is {self.statement.status.value} and cannot be reconciled"
            )

        stamp = now or utcnow()
        fields = {
            "is_cleared": True,
            "reconciled_at": stamp,
            "match_status": MatchStatus.MATCHED,
        }
        cleared = self.cleared_transactions
        results = await asyncio.gather(
            *(transaction_store.update_transaction(t.id, dict(fields)) for t in cleared),
            return_exceptions=True,
        )
        failures = [(t.id, r) for t, r in zip(cleared, results) if isinstance(r, BaseException)]
        if failures:
            for tid, err in failures:
                logger.error("Reconcile stamp failed for transaction %s: %s", tid, err)
            raise self._failure(
                notifier, f"Failed to reconcile {len(failures)} of {len(cleared)} transactions"
            )

        try:
            await statement_store.update_statement(
                self.statement.id, {"status": StatementStatus.RECONCILED}
            )
        except Exception as e:
            logger.error("Statement %s status update failed: %s", self.statement.id, e)
            raise self._failure(notifier, "Failed to mark statement as reconciled") from e

        for txn in cleared:
            self._transactions[txn.id] = txn.with_updates(**fields)
        self.statement = self.statement.with_status(StatementStatus.RECONCILED)
        if not self.is_balanced:
            logger.info(
                "Statement %s reconciled with a difference of %.2f",
                self.statement.id,
                self.difference,
            )
        if notifier:
            notifier.success(f"Reconciled {len(cleared)} transactions")
        return self.statement

    def _failure(self, notifier: Optional[Notifier], message: str) -> ReconciliationError:
        if notifier:
            notifier.error(message)
        return ReconciliationError(message)


def register_frame(tracker: ReconciliationTracker) -> pd.DataFrame:
    """Cleared register in date order with a running balance column."""
    df = transactions_frame(tracker.cleared_transactions)
    if df.empty:
        return df.assign(running_balance=pd.Series(dtype=float))
    df = df.sort_values(["transaction_date", "id"], na_position="last", kind="stable")
    df["running_balance"] = (
        tracker.statement.beginning_balance + df["amount"].cumsum()
    ).round(2)
    return df.reset_index(drop=True)


# ---------------- Summary ---------------- #
def calculate_summary(
    transactions: Sequence[Transaction],
    bank_ending_balance: float,
    expenses: Iterable[Expense] = (),
    invoices: Iterable[Invoice] = (),
) -> ReconciliationSummary:
    """Status counts and totals from each transaction's match_status.

    Book balance is matched invoice totals minus matched expense amounts; it
    is only meaningful when the matched records are supplied.
    """
    expense_amounts = {e.id: abs(e.amount) for e in expenses}
    invoice_totals = {i.id: i.total for i in invoices}
    counts = {status: 0 for status in MatchStatus}
    totals = {status: 0.0 for status in MatchStatus}
    deposits = 0.0
    withdrawals = 0.0
    matched_expense_total = 0.0
    matched_invoice_total = 0.0
    for txn in transactions:
        counts[txn.match_status] += 1
        totals[txn.match_status] += abs(txn.amount)
        if txn.amount > 0:
            deposits += txn.amount
        elif txn.amount < 0:
            withdrawals += abs(txn.amount)
        if txn.match_status is MatchStatus.MATCHED:
            if txn.matched_expense_id:
                matched_expense_total += expense_amounts.get(txn.matched_expense_id, 0.0)
            if txn.matched_invoice_id:
                matched_invoice_total += invoice_totals.get(txn.matched_invoice_id, 0.0)
    book_balance = round(matched_invoice_total - matched_expense_total, 2)
    return ReconciliationSummary(
        total_transactions=len(transactions),
        matched=counts[MatchStatus.MATCHED],
        suggested=counts[MatchStatus.SUGGESTED],
        unmatched=counts[MatchStatus.UNMATCHED],
        discrepancy=counts[MatchStatus.DISCREPANCY],
        ignored=counts[MatchStatus.IGNORED],
        matched_total=round(totals[MatchStatus.MATCHED], 2),
        unmatched_total=round(totals[MatchStatus.UNMATCHED], 2),
        discrepancy_total=round(totals[MatchStatus.DISCREPANCY], 2),
        total_deposits=round(deposits, 2),
        total_withdrawals=round(withdrawals, 2),
        bank_ending_balance=bank_ending_balance,
        book_balance=book_balance,
        variance=round(bank_ending_balance - book_balance, 2),
    )


# ---------------- Match candidates ---------------- #
def _days_apart(a: Optional[date], b: Optional[date]) -> Optional[int]:
    if a is None or b is None:
        return None
    return abs((a - b).days)


def _amount_score(tx_amount: float, other: float) -> Tuple[int, Optional[str]]:
    diff = abs(tx_amount - other)
    pct = (diff / tx_amount) * 100 if tx_amount > 0 else 100.0
    if diff <= 0.5:
        return 50, "Exact amount match"
    if pct <= 5:
        return 30, "Amount within 5%"
    if pct <= 15:
        return 15, "Amount within 15%"
    return 0, None


def _date_score(days: Optional[int]) -> Tuple[int, Optional[str]]:
    if days is None:
        return 0, None
    if days <= 1:
        return 30, "Same day/next day"
    if days <= 3:
        return 20, "Within 3 days"
    if days <= 7:
        return 10, "Within 1 week"
    return 0, None


def find_matches(
    transaction: Transaction,
    expenses: Iterable[Expense],
    invoices: Iterable[Invoice],
) -> List[MatchCandidate]:
    """Scored expense (for withdrawals) or paid-invoice (for deposits) candidates.

    Amount and date proximity carry most of the weight; vendor name or
    invoice number in the description adds 20. Candidates under 30 are
    dropped and scores are capped at 100.
    """
    candidates: List[MatchCandidate] = []
    tx_amount = abs(transaction.amount)
    tx_desc = transaction.description.lower()

    if transaction.amount < 0:
        for exp in expenses:
            confidence = 0
            reasons: List[str] = []
            for score, reason in (
                _amount_score(tx_amount, abs(exp.amount)),
                _date_score(_days_apart(transaction.transaction_date, exp.date)),
            ):
                confidence += score
                if reason:
                    reasons.append(reason)
            vendor = (exp.vendor or "").lower()
            exp_desc = exp.description.lower()
            if vendor and vendor in tx_desc:
                confidence += 20
                reasons.append("Vendor name match")
            elif tx_desc and exp_desc and (exp_desc[:8] in tx_desc or tx_desc[:8] in exp_desc):
                confidence += 10
                reasons.append("Description similarity")
            if confidence >= SUGGEST_MIN_CONFIDENCE:
                candidates.append(
                    MatchCandidate(
                        type="expense",
                        id=exp.id,
                        description=exp.description,
                        amount=exp.amount,
                        date=exp.date,
                        confidence=min(100, confidence),
                        reason=", ".join(reasons),
                    )
                )
    else:
        for inv in invoices:
            if inv.paid_at is None:
                continue
            confidence = 0
            reasons = []
            for score, reason in (
                _amount_score(tx_amount, inv.total),
                _date_score(_days_apart(transaction.transaction_date, inv.paid_at)),
            ):
                confidence += score
                if reason:
                    reasons.append(reason)
            if inv.invoice_number and inv.invoice_number.lower() in tx_desc:
                confidence += 20
                reasons.append("Invoice number in description")
            if confidence >= SUGGEST_MIN_CONFIDENCE:
                label = f"Invoice {inv.invoice_number}"
                if inv.client_name:
                    label += f" - {inv.client_name}"
                candidates.append(
                    MatchCandidate(
                        type="invoice",
                        id=inv.id,
                        description=label,
                        amount=inv.total,
                        date=inv.paid_at,
                        confidence=min(100, confidence),
                        reason=", ".join(reasons),
                    )
                )

    candidates.sort(key=lambda c: c.confidence, reverse=True)
    return candidates


def candidate_fields(candidate: MatchCandidate) -> Dict[str, object]:
    """Transaction fields that record a match against ``candidate``."""
    fields: Dict[str, object] = {"match_status": MatchStatus.MATCHED}
    if candidate.type == "expense":
        fields["matched_expense_id"] = candidate.id
    else:
        fields["matched_invoice_id"] = candidate.id
    return fields


def auto_match(
    transactions: Iterable[Transaction],
    expenses: Sequence[Expense],
    invoices: Sequence[Invoice],
) -> Tuple[List[Transaction], List[MatchSuggestion]]:
    """Match confident candidates, mark the rest as suggested.

    Only unmatched transactions are considered. Returns the updated
    transactions (unchanged ones included) and the review suggestions.
    """
    updated: List[Transaction] = []
    suggestions: List[MatchSuggestion] = []
    for txn in transactions:
        if txn.match_status is not MatchStatus.UNMATCHED:
            updated.append(txn)
            continue
        candidates = find_matches(txn, expenses, invoices)
        if not candidates:
            updated.append(txn)
        elif candidates[0].confidence >= AUTO_MATCH_MIN_CONFIDENCE:
            updated.append(txn.with_updates(**candidate_fields(candidates[0])))
        else:
            updated.append(txn.with_updates(match_status=MatchStatus.SUGGESTED))
            suggestions.append(
                MatchSuggestion(
                    transaction_id=txn.id,
                    candidates=candidates[:3],
                    confidence="medium" if candidates[0].confidence >= MEDIUM_CONFIDENCE else "low",
                )
            )
    return updated, suggestions


class ExpenseMatchUpdate(NamedTuple):
    transaction_id: str
    expense_id: str
    match_status: MatchStatus
    notes: str


def reconcile_against_expenses(
    transactions: Iterable[Transaction], expenses: Sequence[Expense]
) -> List[ExpenseMatchUpdate]:
    """Exact-amount pass over unmatched withdrawals.

    An expense with the same amount (within a cent) matches, preferring one
    dated within a day. Failing that, an expense dated within a day but with
    a different amount marks the transaction as a discrepancy.
    """
    updates: List[ExpenseMatchUpdate] = []
    for txn in transactions:
        if txn.match_status is not MatchStatus.UNMATCHED or txn.amount >= 0:
            continue
        tx_amount = abs(txn.amount)
        best: Optional[ExpenseMatchUpdate] = None
        for exp in expenses:
            days = _days_apart(txn.transaction_date, exp.date)
            same_day = days is not None and days <= 1
            if abs(exp.amount - tx_amount) < 0.01:
                if same_day:
                    best = ExpenseMatchUpdate(
                        txn.id,
                        exp.id,
                        MatchStatus.MATCHED,
                        f"Exact match: amount ${tx_amount:.2f} on {txn.transaction_date}",
                    )
                    break
                if best is None or best.match_status is MatchStatus.DISCREPANCY:
                    # an amount match outranks an earlier date-only discrepancy
                    best = ExpenseMatchUpdate(
                        txn.id,
                        exp.id,
                        MatchStatus.MATCHED,
                        f"Amount match: ${tx_amount:.2f} (expense: {exp.description})",
                    )
            elif same_day and best is None:
                best = ExpenseMatchUpdate(
                    txn.id,
                    exp.id,
                    MatchStatus.DISCREPANCY,
                    f"Date match but amount differs: Bank ${tx_amount:.2f} vs Expense ${exp.amount:.2f}",
                )
        if best is not None:
            updates.append(best)
    return updates
