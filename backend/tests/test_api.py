from uuid import uuid4

from fastapi.testclient import TestClient

from bankrec.api import app

client = TestClient(app)


def company():
    return f"co-{uuid4().hex[:8]}"


class TestCategorizationEndpoints:
    def test_health(self):
        assert client.get("/health").json() == {"status": "ok"}

    def test_normalize(self):
        resp = client.post("/normalize", json={"descriptions": ["PURCHASE FACEBK *T5HTV8DLT2 650- CA", "#1"]})
        assert resp.status_code == 200
        assert resp.json()["normalized"] == ["facebk", ""]

    def test_keyword_categorize(self):
        resp = client.post(
            "/categorize",
            json={"records": [{"description": "STARBUCKS #123"}, {"description": "XYZZY LLC"}]},
        )
        body = resp.json()
        assert body["categories"] == ["meals", None]
        assert body["metadata"][0]["source"] == "keyword"
        assert body["metadata"][0]["normalized_description"] == "starbucks"

    def test_learned_rule_is_used_for_its_company(self):
        co = company()
        saved = client.post(
            f"/learned-rules/{co}", json={"description": "STARBUCKS #123", "category": "marketing"}
        ).json()
        assert saved["applied"] and saved["persisted"]

        body = client.post(
            "/categorize", json={"company_id": co, "records": [{"description": "STARBUCKS #999"}]}
        ).json()
        assert body["categories"] == ["marketing"]
        assert body["metadata"][0]["source"] == "learned"

        other = client.post(
            "/categorize", json={"company_id": company(), "records": [{"description": "STARBUCKS #999"}]}
        ).json()
        assert other["categories"] == ["meals"]

        rules = client.get(f"/learned-rules/{co}").json()
        assert [r["description_pattern"] for r in rules] == ["starbucks"]

    def test_payee_only_rule_keeps_keyword_category(self):
        co = company()
        client.post(f"/learned-rules/{co}", json={"description": "STARBUCKS #123", "payee_id": "payee-sb"})
        meta = client.post(
            "/categorize", json={"company_id": co, "records": [{"description": "STARBUCKS #999"}]}
        ).json()["metadata"][0]
        assert meta["category"] == "meals"
        assert meta["source"] == "learned"
        assert meta["payee_id"] == "payee-sb"

    def test_learning_an_unknown_category(self):
        resp = client.post(f"/learned-rules/{company()}", json={"description": "ACME", "category": "snacks"})
        assert resp.status_code == 400

    def test_custom_rules(self):
        resp = client.post("/custom-rules", json={"category": "materials", "keywords": ["acme"]})
        assert resp.status_code == 200
        listed = client.get("/custom-rules").json()
        assert listed["count"] == 1
        assert listed["rules"][0]["keywords"] == ["acme"]

        bad = client.post("/custom-rules", json={"category": "snacks", "keywords": ["acme"]})
        assert bad.status_code == 400

        cleared = client.post("/clear-caches").json()
        assert cleared["custom_rules_cleared"] == 1


class TestReconcileEndpoints:
    statement = {"id": "s1", "beginning_balance": 1000, "ending_balance": "1,300.00", "status": "parsed"}
    transactions = [
        {"id": "dep", "description": "CLIENT PAYMENT", "amount": 500, "transaction_date": "2024-01-05"},
        {"id": "wd", "description": "HOME DEPOT", "amount": "(200.00)", "transaction_date": "2024-01-03"},
    ]

    def test_preview(self):
        resp = client.post(
            "/reconcile/preview",
            json={"statement": self.statement, "transactions": self.transactions, "cleared_ids": ["dep", "wd"]},
        )
        body = resp.json()
        assert body["cleared_balance"] == 1300.0
        assert body["is_balanced"] is True
        assert [r["running_balance"] for r in body["register"]] == [800.0, 1300.0]

    def test_preview_unknown_id(self):
        resp = client.post(
            "/reconcile/preview",
            json={"statement": self.statement, "transactions": self.transactions, "cleared_ids": ["zzz"]},
        )
        assert resp.status_code == 404

    def test_summary(self):
        txns = [dict(t, match_status="matched") for t in self.transactions]
        body = client.post(
            "/reconcile/summary", json={"transactions": txns, "bank_ending_balance": 1300}
        ).json()
        assert body["matched"] == 2
        assert body["total_withdrawals"] == 200.0

    def test_match_candidates(self):
        body = client.post(
            "/match-candidates",
            json={
                "transaction": self.transactions[1],
                "expenses": [{"id": "e1", "description": "Lumber", "amount": 200, "date": "2024-01-03"}],
            },
        ).json()
        assert [c["id"] for c in body] == ["e1"]
        assert body[0]["confidence"] == 80
