import pytest

from bankrec.categorize import clear_all_caches


@pytest.fixture(autouse=True)
def _fresh_rule_tables(monkeypatch):
    """Each test starts from the default keyword table and empty caches."""
    monkeypatch.delenv("CATEGORY_RULES_FILE", raising=False)
    monkeypatch.delenv("CUSTOM_CATEGORY_RULES", raising=False)
    clear_all_caches()
    yield
    clear_all_caches()
