"""Tests for the ruleset cache."""

from datetime import datetime, timedelta, UTC

import pytest

from packages.ability.cache import RulesetCache
from packages.ability.models import Action, Rule, Ruleset, SubjectType


def make_ruleset(user_id="user-1", valid_until=None):
    return Ruleset(
        rules=(Rule(action=Action.READ, subject=SubjectType.PATIENT),),
        user_id=user_id,
        valid_until=valid_until,
    )


@pytest.fixture
def cache():
    return RulesetCache(ttl_seconds=300, max_entries=100)


class TestRulesetCache:
    """Tests for RulesetCache."""

    def test_miss_then_hit(self, cache):
        ruleset = make_ruleset()
        assert cache.get("user-1", {}) is None

        cache.set("user-1", {}, ruleset)
        assert cache.get("user-1", {}) is ruleset

        stats = cache.get_stats()
        assert stats.total_hits == 1
        assert stats.total_misses == 1
        assert stats.hit_rate == 0.5

    def test_keyed_on_context(self, cache):
        """Different request contexts are cached separately."""
        cache.set("user-1", {"request": {"params": {"id": "a"}}}, make_ruleset())

        assert cache.get("user-1", {"request": {"params": {"id": "b"}}}) is None
        assert cache.get("user-1", {"request": {"params": {"id": "a"}}}) is not None

    def test_key_ignores_dict_order(self, cache):
        assert cache.make_key("u", {"a": 1, "b": 2}) == cache.make_key("u", {"b": 2, "a": 1})

    def test_none_context_equals_empty(self, cache):
        cache.set("user-1", None, make_ruleset())
        assert cache.get("user-1", {}) is not None

    def test_ttl_expiry(self):
        """Entries past the TTL are not served."""
        cache = RulesetCache(ttl_seconds=0)
        cache.set("user-1", {}, make_ruleset())
        assert cache.get("user-1", {}) is None

    def test_expired_ruleset_not_stored(self, cache):
        """A ruleset whose grants already expired is never cached."""
        past = datetime.now(UTC) - timedelta(seconds=1)
        cache.set("user-1", {}, make_ruleset(valid_until=past))
        assert cache.get("user-1", {}) is None

    def test_future_valid_until_stored(self, cache):
        future = datetime.now(UTC) + timedelta(hours=1)
        cache.set("user-1", {}, make_ruleset(valid_until=future))
        assert cache.get("user-1", {}) is not None

    def test_invalidate_user(self, cache):
        cache.set("user-1", {}, make_ruleset())
        cache.set("user-1", {"request": {"path": "/x"}}, make_ruleset())
        cache.set("user-2", {}, make_ruleset("user-2"))

        assert cache.invalidate_user("user-1") == 2
        assert cache.get("user-1", {}) is None
        assert cache.get("user-2", {}) is not None

    def test_invalidate_all(self, cache):
        cache.set("user-1", {}, make_ruleset())
        cache.set("user-2", {}, make_ruleset("user-2"))
        cache.invalidate_all()

        assert cache.get_stats().total_entries == 0

    def test_evicts_least_recently_used(self):
        cache = RulesetCache(ttl_seconds=300, max_entries=2)
        cache.set("user-1", {}, make_ruleset("user-1"))
        cache.set("user-2", {}, make_ruleset("user-2"))
        cache.get("user-1", {})
        cache.set("user-3", {}, make_ruleset("user-3"))

        assert cache.get_stats().total_entries == 2
        assert cache.get("user-2", {}) is None
        assert cache.get("user-1", {}) is not None
        assert cache.get("user-3", {}) is not None
