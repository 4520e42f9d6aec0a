"""Persistence and notification collaborators.

The core only talks to these through small async protocols so the hosted
backend can be swapped for an in-memory store (tests, the demo API) or the
JSON-file rule store. Store implementations raise ``PersistenceError`` on
failure; deciding whether that failure is surfaced or swallowed is the
caller's business.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import defaultdict
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .models import (
    LearnedRule,
    PersistenceError,
    Statement,
    Transaction,
)

logger = logging.getLogger(__name__)

__all__ = [
    "TransactionStore",
    "StatementStore",
    "RuleStore",
    "Notifier",
    "InMemoryStore",
    "JsonRuleStore",
    "LoggingNotifier",
    "RecordingNotifier",
    "serialize_fields",
]


def serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Turn enum/datetime values into the plain JSON values a REST row takes."""
    out: Dict[str, Any] = {}
    for k, v in fields.items():
        if isinstance(v, Enum):
            out[k] = v.value
        elif hasattr(v, "isoformat"):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


class TransactionStore(Protocol):
    async def update_transaction(self, transaction_id: str, fields: Dict[str, Any]) -> None: ...


class StatementStore(Protocol):
    async def update_statement(self, statement_id: str, fields: Dict[str, Any]) -> None: ...


class RuleStore(Protocol):
    async def list_rules(self, company_id: str) -> List[LearnedRule]: ...

    async def insert_rule(self, rule: LearnedRule) -> LearnedRule: ...

    async def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> None: ...


class Notifier(Protocol):
    """Toast surface for user-facing feedback."""

    def success(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    def __init__(self, name: str = "bankrec.toast"):
        self._log = logging.getLogger(name)

    def success(self, message: str) -> None:
        self._log.info(message)

    def error(self, message: str) -> None:
        self._log.error(message)


class RecordingNotifier:
    """Collects toasts in order as (level, message) pairs."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def success(self, message: str) -> None:
        self.messages.append(("success", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))

    @property
    def errors(self) -> List[str]:
        return [m for level, m in self.messages if level == "error"]


class InMemoryStore:
    """Transactions, statements and learned rules held in dictionaries.

    Writes are recorded in ``writes`` as (table, id, fields) tuples so tests
    can assert on exactly what was persisted.
    """

    def __init__(
        self,
        transactions: Optional[List[Transaction]] = None,
        statements: Optional[List[Statement]] = None,
        rules: Optional[List[LearnedRule]] = None,
    ):
        self.transactions: Dict[str, Transaction] = {t.id: t for t in transactions or []}
        self.statements: Dict[str, Statement] = {s.id: s for s in statements or []}
        self.rules: Dict[str, List[LearnedRule]] = defaultdict(list)
        for rule in rules or []:
            self.rules[rule.company_id].append(rule)
        self.writes: List[Tuple[str, str, Dict[str, Any]]] = []

    async def update_transaction(self, transaction_id: str, fields: Dict[str, Any]) -> None:
        current = self.transactions.get(transaction_id)
        if current is None:
            raise PersistenceError(f"bank_transactions row {transaction_id} not found")
        self.transactions[transaction_id] = current.with_updates(**fields)
        self.writes.append(("bank_transactions", transaction_id, serialize_fields(fields)))

    async def update_statement(self, statement_id: str, fields: Dict[str, Any]) -> None:
        current = self.statements.get(statement_id)
        if current is None:
            raise PersistenceError(f"bank_statements row {statement_id} not found")
        self.statements[statement_id] = current.model_copy(update=fields)
        self.writes.append(("bank_statements", statement_id, serialize_fields(fields)))

    async def list_rules(self, company_id: str) -> List[LearnedRule]:
        return list(self.rules.get(company_id, []))

    async def insert_rule(self, rule: LearnedRule) -> LearnedRule:
        self.rules[rule.company_id].append(rule)
        self.writes.append(("learned_rules", rule.id, serialize_fields(rule.model_dump())))
        return rule

    async def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> None:
        for company_rules in self.rules.values():
            for i, rule in enumerate(company_rules):
                if rule.id == rule_id:
                    company_rules[i] = rule.model_copy(update=fields)
                    self.writes.append(("learned_rules", rule_id, serialize_fields(fields)))
                    return
        raise PersistenceError(f"learned_rules row {rule_id} not found")


class JsonRuleStore:
    """Learned rules persisted to a single JSON file, keyed by company.

    File format: ``{"<company_id>": [<LearnedRule as JSON>, ...], ...}``.
    File IO runs in a worker thread; an asyncio lock serialises
    read-modify-write cycles.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, List[dict]]:
        if not os.path.isfile(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read learned rules from {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, List[dict]]) -> None:
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot write learned rules to {self.path}: {e}") from e

    async def list_rules(self, company_id: str) -> List[LearnedRule]:
        data = await asyncio.to_thread(self._read)
        return [LearnedRule.model_validate(r) for r in data.get(company_id, [])]

    async def insert_rule(self, rule: LearnedRule) -> LearnedRule:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data.setdefault(rule.company_id, []).append(rule.model_dump(mode="json"))
            await asyncio.to_thread(self._write, data)
        return rule

    async def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            for rows in data.values():
                for row in rows:
                    if row.get("id") == rule_id:
                        row.update(serialize_fields(fields))
                        await asyncio.to_thread(self._write, data)
                        return
        raise PersistenceError(f"learned_rules row {rule_id} not found")
