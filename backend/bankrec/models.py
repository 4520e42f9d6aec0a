"""Pydantic models and exceptions shared across the categorization core.

Transactions and statements are frozen; updates go through
``with_updates`` so validation (including the category/category_source
invariant) runs on every change instead of being bypassed by
``model_copy``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from datetime import date as date_type
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import normalize_number

__all__ = [
    "BankRecError",
    "InvalidCategoryError",
    "TransactionNotFoundError",
    "PersistenceError",
    "ReconciliationError",
    "UnbalancedReconciliationError",
    "MatchStatus",
    "CategorySource",
    "StatementStatus",
    "Transaction",
    "Statement",
    "LearnedRule",
    "RuleUpdates",
    "WriteResult",
    "ReconciliationSummary",
    "MatchCandidate",
    "MatchSuggestion",
    "ManualUpdateResult",
    "Suggestion",
    "Expense",
    "Invoice",
    "utcnow",
]


# ---------------- Errors ---------------- #
class BankRecError(Exception):
    """Base class for errors raised by the categorization core."""


class InvalidCategoryError(BankRecError, ValueError):
    def __init__(self, category: str):
        super().__init__(f"Unknown category '{category}'")
        self.category = category


class TransactionNotFoundError(BankRecError, KeyError):
    def __init__(self, transaction_id: str):
        super().__init__(transaction_id)
        self.transaction_id = transaction_id

    def __str__(self) -> str:
        return f"Transaction '{self.transaction_id}' is not loaded"


class PersistenceError(BankRecError):
    """Raised by store implementations when a read or write fails."""


class ReconciliationError(BankRecError):
    pass


class UnbalancedReconciliationError(ReconciliationError):
    """Finishing an unbalanced reconciliation needs explicit confirmation."""

    def __init__(self, difference: float):
        super().__init__(
            f"Cleared balance is off by {difference:.2f}; confirm to finish anyway"
        )
        self.difference = difference


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------- Enums ---------------- #
class MatchStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    SUGGESTED = "suggested"
    DISCREPANCY = "discrepancy"
    IGNORED = "ignored"


class CategorySource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    AI = "ai"


class StatementStatus(str, Enum):
    PENDING = "pending"
    PARSED = "parsed"
    RECONCILED = "reconciled"
    ERROR = "error"


STATUS_TRANSITIONS: Dict[StatementStatus, FrozenSet[StatementStatus]] = {
    StatementStatus.PENDING: frozenset({StatementStatus.PARSED, StatementStatus.ERROR}),
    StatementStatus.PARSED: frozenset({StatementStatus.RECONCILED}),
    StatementStatus.ERROR: frozenset({StatementStatus.PARSED, StatementStatus.RECONCILED}),
    StatementStatus.RECONCILED: frozenset({StatementStatus.RECONCILED}),
}


# ---------------- Records ---------------- #
class Transaction(BaseModel):
    """A single bank-statement line.

    ``amount`` is signed: deposits positive, withdrawals negative. String
    amounts in statement notation ("(12.50)", "12.50-", "$1,204.00") are
    accepted and converted.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str
    description: str = ""
    amount: float
    transaction_date: Optional[date] = None
    statement_id: Optional[str] = None
    category: Optional[str] = None
    category_source: Optional[CategorySource] = None
    payee_id: Optional[str] = None
    project_id: Optional[str] = None
    match_status: MatchStatus = MatchStatus.UNMATCHED
    is_cleared: bool = False
    reconciled_at: Optional[datetime] = None
    matched_expense_id: Optional[str] = None
    matched_invoice_id: Optional[str] = None
    match_notes: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = normalize_number(v)
            if parsed is None:
                raise ValueError(f"Unparseable amount {v!r}")
            return parsed
        return v

    @field_validator("amount")
    @classmethod
    def _round_amount(cls, v: float) -> float:
        return round(float(v), 2)

    @field_validator("description", mode="before")
    @classmethod
    def _description_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @model_validator(mode="before")
    @classmethod
    def _drop_orphan_source(cls, data: Any) -> Any:
        # clearing the category clears where it came from
        if isinstance(data, dict) and data.get("category") is None:
            data = {**data, "category_source": None}
        return data

    @model_validator(mode="after")
    def _category_source_invariant(self) -> "Transaction":
        if self.category is not None and self.category_source is None:
            raise ValueError("category_source is required when category is set")
        return self

    @property
    def is_categorized(self) -> bool:
        return self.category is not None

    @property
    def is_deposit(self) -> bool:
        return self.amount > 0

    def with_updates(self, **fields: Any) -> "Transaction":
        """Return a validated copy with ``fields`` applied."""
        data = self.model_dump()
        data.update(fields)
        return Transaction.model_validate(data)


class Statement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    company_id: Optional[str] = None
    account_name: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    beginning_balance: float = 0.0
    ending_balance: float = 0.0
    status: StatementStatus = StatementStatus.PENDING

    @field_validator("beginning_balance", "ending_balance", mode="before")
    @classmethod
    def _parse_balance(cls, v: Any) -> Any:
        if v is None:
            return 0.0
        if isinstance(v, str):
            parsed = normalize_number(v)
            if parsed is None:
                raise ValueError(f"Unparseable balance {v!r}")
            return parsed
        return v

    def can_transition(self, status: StatementStatus) -> bool:
        return status in STATUS_TRANSITIONS[self.status]

    def with_status(self, status: StatementStatus) -> "Statement":
        if not self.can_transition(status):
            raise ReconciliationError(
                f"Statement {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status})


class RuleUpdates(BaseModel):
    """Fields a manual edit touched. ``None`` means "not touched"."""

    category: Optional[str] = None
    payee_id: Optional[str] = None
    project_id: Optional[str] = None

    def touched(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)

    def is_empty(self) -> bool:
        return not self.touched()


class LearnedRule(BaseModel):
    """A user-confirmed mapping from a normalized pattern to assignments."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    company_id: str
    description_pattern: str
    category: Optional[str] = None
    payee_id: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def merged(self, updates: RuleUpdates) -> "LearnedRule":
        """Copy with the touched fields of ``updates`` applied; others kept."""
        return self.model_copy(update={**updates.touched(), "updated_at": utcnow()})


class WriteResult(BaseModel):
    """Outcome of an optimistic update.

    ``applied`` is the in-memory state, ``persisted`` the store write. Best
    effort operations return ``applied=True, persisted=False`` instead of
    raising, so callers and tests can see the divergence.
    """

    applied: bool
    persisted: bool
    error: Optional[str] = None
    rule: Optional[LearnedRule] = None
    transaction_ids: List[str] = Field(default_factory=list)
    failed_ids: List[str] = Field(default_factory=list)

    @property
    def diverged(self) -> bool:
        return self.applied and not self.persisted

    @classmethod
    def noop(cls) -> "WriteResult":
        return cls(applied=False, persisted=False)


class ReconciliationSummary(BaseModel):
    total_transactions: int = 0
    matched: int = 0
    suggested: int = 0
    unmatched: int = 0
    discrepancy: int = 0
    ignored: int = 0
    total_deposits: float = 0.0
    total_withdrawals: float = 0.0
    matched_total: float = 0.0
    unmatched_total: float = 0.0
    discrepancy_total: float = 0.0
    bank_ending_balance: float = 0.0
    book_balance: float = 0.0
    variance: float = 0.0


class Expense(BaseModel):
    id: str
    description: str = ""
    amount: float
    date: Optional[date_type] = None
    category: Optional[str] = None
    vendor: Optional[str] = None


class Invoice(BaseModel):
    id: str
    invoice_number: str = ""
    total: float
    paid_at: Optional[date] = None
    client_name: Optional[str] = None


class MatchCandidate(BaseModel):
    type: str  # "expense" | "invoice"
    id: str
    description: str
    amount: float
    date: Optional[date_type] = None
    confidence: int
    reason: str


class MatchSuggestion(BaseModel):
    transaction_id: str
    candidates: List[MatchCandidate]
    confidence: str  # "medium" | "low"


class Suggestion(BaseModel):
    """What auto-categorization would assign to a transaction."""

    category: Optional[str] = None
    payee_id: Optional[str] = None
    project_id: Optional[str] = None
    source: str  # "learned" | "keyword"
    rule_id: Optional[str] = None
    score: Optional[float] = None


class ManualUpdateResult(BaseModel):
    """A user edit: the direct write, the learned rule, and the propagation."""

    transaction: WriteResult
    rule: WriteResult = Field(default_factory=WriteResult.noop)
    siblings: WriteResult = Field(default_factory=WriteResult.noop)
