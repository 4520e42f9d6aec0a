"""FastAPI service exposing the categorization core to the front end.

Endpoints:
  GET  /health
  POST /normalize                     -> merchant keys for descriptions
  POST /categorize                    -> learned-rule / keyword suggestions
  GET  /learned-rules/{company_id}
  POST /learned-rules/{company_id}    -> learn from a manual edit
  GET  /custom-rules, POST /custom-rules, POST /clear-caches
  POST /reconcile/preview             -> cleared balance, difference, register
  POST /reconcile/summary             -> match-status counts and totals
  POST /match-candidates              -> scored expense / invoice candidates

Learned rules live in the JSON file named by LEARNED_RULES_FILE, or in
memory when it is unset.

Run (dev): uvicorn bankrec.api:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

from .categorize import (
    CANONICAL_CATEGORIES,
    StaticCategoryLookup,
    add_persistent_custom_rule,
    categorize_with_metadata,
    clear_all_caches,
    list_custom_rules,
    load_persistent_custom_rules,
)
from .learned_rules import LearnedRuleRepository
from .models import (
    Expense,
    InvalidCategoryError,
    Invoice,
    LearnedRule,
    MatchCandidate,
    ReconciliationSummary,
    RuleUpdates,
    Statement,
    Transaction,
    TransactionNotFoundError,
    WriteResult,
)
from .normalize import normalize_description
from .reconcile import ReconciliationTracker, calculate_summary, find_matches, register_frame
from .session import suggest_category
from .store import InMemoryStore, JsonRuleStore, RuleStore
from .utils import df_to_records

logging.basicConfig(level=os.getenv("API_LOG_LEVEL", "INFO"))
logger = logging.getLogger("bankrec_api")


def _make_rule_store() -> RuleStore:
    path = os.getenv("LEARNED_RULES_FILE")
    if path:
        return JsonRuleStore(path)
    return InMemoryStore()


rule_store: RuleStore = _make_rule_store()
_repositories: Dict[str, LearnedRuleRepository] = {}


async def get_repository(company_id: str) -> LearnedRuleRepository:
    """Per-company repository, loaded from the store on first use."""
    repo = _repositories.get(company_id)
    if repo is None:
        repo = LearnedRuleRepository(company_id, rule_store)
        try:
            await repo.refresh()
        except Exception as e:
            logger.warning("Learned rules for %s not loaded: %s", company_id, e)
        _repositories[company_id] = repo
    return repo


# ---------------- Request / response models ---------------- #
class NormalizeRequest(BaseModel):
    descriptions: List[str]


class CategorizeRecord(BaseModel):
    description: Optional[str] = None
    amount: Optional[float] = None


class CategorizeRequest(BaseModel):
    records: List[CategorizeRecord]
    company_id: Optional[str] = None


class CategorizeResponse(BaseModel):
    categories: List[Optional[str]]
    metadata: List[dict]


class LearnRequest(BaseModel):
    description: str
    category: Optional[str] = None
    payee_id: Optional[str] = None
    project_id: Optional[str] = None


class NewRule(BaseModel):
    category: str
    keywords: List[str]
    prepend: Optional[bool] = False


class ReconcilePreviewRequest(BaseModel):
    statement: Statement
    transactions: List[Transaction]
    cleared_ids: Optional[List[str]] = None


class ReconcilePreviewResponse(BaseModel):
    cleared_balance: float
    difference: float
    is_balanced: bool
    register: List[dict]


class SummaryRequest(BaseModel):
    transactions: List[Transaction]
    bank_ending_balance: float
    expenses: List[Expense] = Field(default_factory=list)
    invoices: List[Invoice] = Field(default_factory=list)


class MatchCandidatesRequest(BaseModel):
    transaction: Transaction
    expenses: List[Expense] = Field(default_factory=list)
    invoices: List[Invoice] = Field(default_factory=list)


app = FastAPI(title="Bank Reconciliation API", version="0.1.0")
app.add_middleware(GZipMiddleware, minimum_size=1024)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup_tasks() -> None:
    """Load any persistent custom keyword rules on startup."""
    added = load_persistent_custom_rules()
    if added:
        logger.info("Loaded %d custom keyword rules", added)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ------------------ Categorization ------------------ #
@app.post("/normalize")
def normalize(req: NormalizeRequest):
    return {"normalized": [normalize_description(d) for d in req.descriptions]}


@app.post("/categorize", response_model=CategorizeResponse)
async def categorize(req: CategorizeRequest):
    repo = await get_repository(req.company_id) if req.company_id else None
    lookup = StaticCategoryLookup()
    categories: List[Optional[str]] = []
    metadata: List[dict] = []
    for rec in req.records:
        desc = rec.description or ""
        meta = categorize_with_metadata(desc)
        suggestion = suggest_category(desc, repo, lookup)
        if suggestion is None:
            meta.update(category=None, source=None)
        else:
            meta.update(suggestion.model_dump())
        meta["normalized_description"] = normalize_description(desc)
        categories.append(meta["category"])
        metadata.append(meta)
    return CategorizeResponse(categories=categories, metadata=metadata)


@app.get("/learned-rules/{company_id}", response_model=List[LearnedRule])
async def learned_rules(company_id: str):
    repo = await get_repository(company_id)
    return repo.rules


@app.post("/learned-rules/{company_id}", response_model=WriteResult)
async def learn_rule(company_id: str, req: LearnRequest):
    updates = RuleUpdates(category=req.category, payee_id=req.payee_id, project_id=req.project_id)
    if updates.category is not None and not StaticCategoryLookup().is_valid(updates.category):
        raise HTTPException(status_code=400, detail={"message": "Invalid category"})
    repo = await get_repository(company_id)
    return await repo.save(req.description, updates)


@app.get("/custom-rules")
def custom_rules():
    rules = list_custom_rules()
    return {
        "count": len(rules),
        "rules": [{"category": r.category, "keywords": list(r.keywords)} for r in rules],
        "categories": CANONICAL_CATEGORIES,
    }


@app.post("/custom-rules")
def add_custom_rule(rule: NewRule):
    try:
        ok = add_persistent_custom_rule(rule.category, rule.keywords, prepend=bool(rule.prepend))
    except InvalidCategoryError:
        raise HTTPException(status_code=400, detail={"message": "Invalid category"})
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"message": str(e)})
    return {"persisted": ok}


@app.post("/clear-caches")
def clear_caches():
    summary = clear_all_caches()
    _repositories.clear()
    return {"cleared": True, **summary}


# ------------------ Reconciliation ------------------ #
@app.post("/reconcile/preview", response_model=ReconcilePreviewResponse)
def reconcile_preview(req: ReconcilePreviewRequest):
    tracker = ReconciliationTracker(req.statement, req.transactions)
    try:
        if req.cleared_ids is not None:
            # explicit ticks replace the stored is_cleared flags
            tracker.unclear_all()
            for tid in req.cleared_ids:
                tracker.set_cleared(tid)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail={"message": str(e)})
    return ReconcilePreviewResponse(
        cleared_balance=tracker.cleared_balance,
        difference=tracker.difference,
        is_balanced=tracker.is_balanced,
        register=df_to_records(register_frame(tracker)),
    )


@app.post("/reconcile/summary", response_model=ReconciliationSummary)
def reconcile_summary(req: SummaryRequest):
    return calculate_summary(req.transactions, req.bank_ending_balance, req.expenses, req.invoices)


@app.post("/match-candidates", response_model=List[MatchCandidate])
def match_candidates(req: MatchCandidatesRequest):
    return find_matches(req.transaction, req.expenses, req.invoices)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("bankrec.api:app", host="0.0.0.0", port=8000, reload=True)
