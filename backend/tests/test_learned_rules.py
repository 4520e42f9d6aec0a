import asyncio

import pytest

from bankrec.learned_rules import (
    LearnedRuleRepository,
    best_learned_rule,
    find_sibling_ids,
    fuzzy_match_pattern,
    match_learned_rule,
    patterns_overlap,
)
from bankrec.models import CategorySource, LearnedRule, PersistenceError, RuleUpdates, Transaction
from bankrec.store import InMemoryStore, JsonRuleStore


def rule(pattern, **kw):
    return LearnedRule(company_id="co1", description_pattern=pattern, **kw)


class FailingRuleStore:
    async def list_rules(self, company_id):
        raise PersistenceError("rules table unavailable")

    async def insert_rule(self, rule):
        raise PersistenceError("insert failed")

    async def update_rule(self, rule_id, fields):
        raise PersistenceError("update failed")


class TestFuzzyMatch:
    def test_superset_description_matches(self):
        assert fuzzy_match_pattern("adobe creative cloud monthly", "adobe creative cloud")

    def test_unrelated(self):
        assert not fuzzy_match_pattern("starbucks", "adobe creative cloud")

    def test_empty_pattern_never_matches(self):
        assert not fuzzy_match_pattern("", "")
        assert not fuzzy_match_pattern("adobe", "")

    def test_ratio_is_against_pattern_tokens(self):
        # 1 of 3 pattern tokens
        assert not fuzzy_match_pattern("adobe", "adobe creative cloud")
        assert fuzzy_match_pattern("adobe creative cloud", "adobe")

    def test_overlap_is_symmetric(self):
        assert patterns_overlap("adobe", "adobe creative cloud")
        assert patterns_overlap("adobe creative cloud", "adobe")


class TestBestLearnedRule:
    def test_best_score_wins(self):
        rules = [rule("adobe", category="equipment"), rule("adobe creative cloud", category="software")]
        hit = best_learned_rule("ACH DEBIT ADOBE CREATIVE CLOUD", rules)
        assert hit.rule.category == "software"
        assert hit.score == 1.0

    def test_first_rule_wins_ties(self):
        first = rule("uber eats", category="meals")
        second = rule("eats uber", category="travel")
        assert match_learned_rule("UBER EATS", [first, second]) is first

    def test_below_threshold(self):
        assert best_learned_rule("HOME GOODS STORE", [rule("home depot", category="materials")]) is None

    def test_empty_description(self):
        assert best_learned_rule("#1234", [rule("adobe", category="software")]) is None

    def test_stale_patterns_are_renormalized(self):
        # saved before the normalizer stripped store numbers
        stale = rule("STARBUCKS #123", category="meals")
        hit = best_learned_rule("STARBUCKS #987", [stale])
        assert hit is not None and hit.score == 1.0


class TestSiblings:
    def test_only_uncategorized_look_alikes(self):
        txns = [
            Transaction(id="t1", description="ADOBE CREATIVE CLOUD", amount=-54.99),
            Transaction(id="t2", description="ADOBE CREATIVE CLOUD MONTHLY", amount=-54.99),
            Transaction(
                id="t3",
                description="ADOBE CREATIVE CLOUD",
                amount=-54.99,
                category="software",
                category_source=CategorySource.MANUAL,
            ),
            Transaction(id="t4", description="STARBUCKS #12", amount=-4.5),
        ]
        assert find_sibling_ids(txns, "t1", "ADOBE CREATIVE CLOUD") == ["t2"]

    def test_empty_pattern_has_no_siblings(self):
        txns = [Transaction(id="t1", description="#1", amount=1), Transaction(id="t2", description="#2", amount=1)]
        assert find_sibling_ids(txns, "t1", "#1") == []


class TestRepositorySave:
    def test_too_short_pattern_is_a_noop(self):
        store = InMemoryStore()
        repo = LearnedRuleRepository("co1", store)
        result = asyncio.run(repo.save("A", RuleUpdates(category="meals")))
        assert not result.applied and not result.persisted
        assert len(repo) == 0
        assert store.writes == []

    def test_empty_updates_are_a_noop(self):
        repo = LearnedRuleRepository("co1", InMemoryStore())
        result = asyncio.run(repo.save("ADOBE CREATIVE CLOUD", RuleUpdates()))
        assert not result.applied
        assert len(repo) == 0

    def test_saving_twice_merges_into_one_rule(self):
        store = InMemoryStore()
        repo = LearnedRuleRepository("co1", store)

        async def run():
            await repo.save("ADOBE CREATIVE CLOUD", RuleUpdates(category="software"))
            return await repo.save("ADOBE CREATIVE CLOUD 01/15", RuleUpdates(payee_id="payee-adobe"))

        result = asyncio.run(run())
        assert result.persisted
        assert len(repo) == 1
        saved = repo.rules[0]
        assert saved.description_pattern == "adobe creative cloud"
        assert saved.category == "software"
        assert saved.payee_id == "payee-adobe"
        stored = store.rules["co1"]
        assert len(stored) == 1
        assert stored[0].payee_id == "payee-adobe"

    def test_second_category_replaces_first_in_store(self):
        store = InMemoryStore()
        repo = LearnedRuleRepository("co1", store)

        async def run():
            await repo.save("STARBUCKS #123", RuleUpdates(category="meals"))
            return await repo.save("STARBUCKS #456", RuleUpdates(category="marketing"))

        result = asyncio.run(run())
        assert result.persisted
        assert len(store.rules["co1"]) == 1
        assert store.rules["co1"][0].category == "marketing"
        assert [r.category for r in repo.rules] == ["marketing"]

    def test_overlapping_pattern_merges(self):
        repo = LearnedRuleRepository("co1", InMemoryStore())

        async def run():
            await repo.save("ADOBE CREATIVE CLOUD", RuleUpdates(category="software"))
            await repo.save("ADOBE CREATIVE CLOUD MONTHLY", RuleUpdates(project_id="proj-1"))

        asyncio.run(run())
        assert len(repo) == 1
        assert repo.rules[0].project_id == "proj-1"

    def test_failed_store_keeps_memory_and_reports_divergence(self):
        repo = LearnedRuleRepository("co1", FailingRuleStore())
        result = asyncio.run(repo.save("ADOBE CREATIVE CLOUD", RuleUpdates(category="software")))
        assert result.applied
        assert not result.persisted
        assert result.diverged
        assert "insert failed" in result.error
        assert repo.match("ADOBE CREATIVE CLOUD").category == "software"

    def test_failed_update_keeps_merge(self):
        existing = rule("adobe creative cloud", category="software")
        repo = LearnedRuleRepository("co1", FailingRuleStore(), rules=[existing])
        result = asyncio.run(repo.save("ADOBE CREATIVE CLOUD", RuleUpdates(category="equipment")))
        assert result.diverged
        assert repo.rules[0].category == "equipment"
        assert repo.rules[0].id == existing.id

    def test_refresh_errors_propagate(self):
        repo = LearnedRuleRepository("co1", FailingRuleStore())
        with pytest.raises(PersistenceError):
            asyncio.run(repo.refresh())

    def test_refresh_loads_company_rules(self):
        store = InMemoryStore(rules=[rule("adobe", category="software"), LearnedRule(
            company_id="co2", description_pattern="shell", category="vehicle"
        )])
        repo = LearnedRuleRepository("co1", store)
        asyncio.run(repo.refresh())
        assert [r.description_pattern for r in repo.rules] == ["adobe"]


class TestJsonRuleStore:
    def test_insert_list_update(self, tmp_path):
        path = tmp_path / "learned.json"
        store = JsonRuleStore(str(path))
        saved = rule("adobe creative cloud", category="software")

        async def run():
            await store.insert_rule(saved)
            await store.update_rule(saved.id, {"payee_id": "payee-adobe"})
            return await JsonRuleStore(str(path)).list_rules("co1")

        loaded = asyncio.run(run())
        assert len(loaded) == 1
        assert loaded[0].id == saved.id
        assert loaded[0].category == "software"
        assert loaded[0].payee_id == "payee-adobe"

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonRuleStore(str(tmp_path / "nope.json"))
        assert asyncio.run(store.list_rules("co1")) == []

    def test_update_unknown_rule(self, tmp_path):
        store = JsonRuleStore(str(tmp_path / "learned.json"))
        with pytest.raises(PersistenceError):
            asyncio.run(store.update_rule("missing", {"category": "meals"}))

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "learned.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceError):
            asyncio.run(JsonRuleStore(str(path)).list_rules("co1"))
