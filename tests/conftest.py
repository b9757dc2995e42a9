"""
Shared pytest fixtures for the asset redirector tests.

Provides:
- A recording fake existence verifier
- Resolution caches backed by a temporary JSON file
- Resolver construction helpers
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from redirector import (  # noqa: E402
    ExistenceCache,
    JsonFileStore,
    ResolutionCache,
    RuleTable,
    UrlResolver,
    default_rule_table,
)

ORIGIN = "https://game.example"
BASE = "https://cdn.example"


class FakeVerifier:
    """Answers from a fixed set of existing URLs and records every probe."""

    def __init__(self, existing: set[str] | None = None) -> None:
        self.existing = set(existing or ())
        self.cache = ExistenceCache()
        self.probes: list[str] = []

    async def exists(self, candidate_url: str) -> bool:
        cached = self.cache.get(candidate_url)
        if cached is not None:
            return cached
        self.probes.append(candidate_url)
        ok = candidate_url in self.existing
        self.cache.set(candidate_url, ok)
        return ok


class CountingRuleTable(RuleTable):
    """RuleTable that counts how often rules and exclusions are consulted."""

    def __init__(self, inner: RuleTable) -> None:
        super().__init__(inner.rules, inner.exclusions)
        self.match_calls = 0
        self.exclusion_calls = 0

    def match(self, url):
        self.match_calls += 1
        return super().match(url)

    def is_excluded(self, url):
        self.exclusion_calls += 1
        return super().is_excluded(url)


@pytest.fixture
def cache_path(tmp_path: Path) -> Path:
    return tmp_path / "cache.json"


@pytest.fixture
def resolution_cache(cache_path: Path) -> ResolutionCache:
    cache = ResolutionCache(JsonFileStore(cache_path))
    cache.load()
    return cache


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def rule_table() -> CountingRuleTable:
    return CountingRuleTable(default_rule_table(BASE))


@pytest.fixture
def make_resolver(resolution_cache: ResolutionCache, verifier: FakeVerifier, rule_table: CountingRuleTable) -> Callable[..., UrlResolver]:
    def _make(table: RuleTable | None = None, cache: ResolutionCache | None = None) -> UrlResolver:
        table = table if table is not None else rule_table
        cache = cache if cache is not None else resolution_cache
        return UrlResolver(table, verifier, cache, ORIGIN)

    return _make
