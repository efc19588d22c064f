import asyncio

import pytest

from memberbot.cache import MemberCache
from memberbot.store import MembershipStore, RosterEntry, StoreError
from tests.fakes import FakeStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_cache(store, interval=100.0):
    clock = FakeClock()
    return MemberCache(store, refresh_interval=interval, clock=clock), clock


def test_refresh_loads_roster_keyed_by_lowercase_email():
    store = FakeStore(roster=[RosterEntry("Alice@Example.com", "Alice A", "01/01/26")])
    cache, _ = make_cache(store)

    assert asyncio.run(cache.refresh()) is True

    assert cache.size == 1
    assert cache.has("  ALICE@example.COM ")
    assert cache.get_full_name("alice@example.com") == "Alice A"
    assert cache.get_entry("bob@example.com") is None


def test_refresh_is_rate_limited_until_forced():
    store = FakeStore(roster=[RosterEntry("a@example.com", "A")])
    cache, clock = make_cache(store, interval=100.0)

    asyncio.run(cache.refresh())
    clock.now += 50
    assert asyncio.run(cache.refresh()) is False
    assert store.roster_fetches == 1

    assert asyncio.run(cache.refresh(force=True)) is True
    assert store.roster_fetches == 2

    clock.now += 100
    assert cache.is_stale()
    asyncio.run(cache.refresh())
    assert store.roster_fetches == 3


def test_refresh_swaps_snapshot():
    store = FakeStore(roster=[RosterEntry("a@example.com", "A")])
    cache, _ = make_cache(store)
    asyncio.run(cache.refresh())

    store.roster = [RosterEntry("b@example.com", "B")]
    asyncio.run(cache.refresh(force=True))

    assert not cache.has("a@example.com")
    assert cache.has("b@example.com")


def test_unavailable_store_empties_cache():
    store = FakeStore(roster=[RosterEntry("a@example.com", "A")])
    cache, _ = make_cache(store)
    asyncio.run(cache.refresh())

    store.available = False
    assert asyncio.run(cache.refresh(force=True)) is False

    assert cache.size == 0
    assert not cache.has("a@example.com")
    assert cache.last_refresh is not None


def test_fetch_failure_keeps_previous_snapshot():
    store = FakeStore(roster=[RosterEntry("a@example.com", "A")])
    cache, _ = make_cache(store)
    asyncio.run(cache.refresh())

    store.fail_roster = True
    with pytest.raises(StoreError):
        asyncio.run(cache.refresh(force=True))

    assert cache.has("a@example.com")


def test_malformed_store_url_surfaces_as_store_error():
    cache, _ = make_cache(MembershipStore("not-a-url", "key"))

    with pytest.raises(StoreError):
        asyncio.run(cache.refresh())

    assert cache.size == 0
