# tests/unit/test_inventory_lock_service.py

import threading
from datetime import datetime, timedelta, timezone

import pytest

from reservation_engine.domain.exceptions import CacheUnavailableError
from reservation_engine.domain.inventory import ItemType, LockError, counter_key, lock_key


HOTEL = ItemType.HOTEL


# ---------------------
# ACQUIRE
# ---------------------

def test_acquire_release_reacquire_cycle(make_lock_service):
    service = make_lock_service({("hotel", "H1"): 2})

    first = service.acquire(HOTEL, "H1", 2)
    assert first.ok
    assert service.cached_remaining(HOTEL, "H1") == 0

    second = service.acquire(HOTEL, "H1", 2)
    assert not second.ok
    assert second.error == LockError.ALREADY_LOCKED

    assert service.release(HOTEL, "H1", first.lock_id) is True
    assert service.cached_remaining(HOTEL, "H1") == 2

    third = service.acquire(HOTEL, "H1", 2)
    assert third.ok
    assert third.lock_id != first.lock_id


def test_concurrent_acquires_never_grant_more_than_capacity(make_lock_service):
    service = make_lock_service({("hotel", "H1"): 3})
    barrier = threading.Barrier(20)
    results = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        outcome = service.acquire(HOTEL, "H1", 1)
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    granted = [r for r in results if r.ok]
    assert sum(r.lock.quantity_reserved for r in granted) <= 3
    assert len(granted) == 1
    assert {r.error for r in results if not r.ok} == {LockError.ALREADY_LOCKED}


def test_serialized_reservations_stop_at_capacity(make_lock_service):
    service = make_lock_service({("tour", "T1"): 3})
    granted = 0

    for _ in range(5):
        outcome = service.acquire(ItemType.TOUR, "T1", 1)
        if outcome.ok:
            granted += 1
            service.commit(ItemType.TOUR, "T1", outcome.lock_id)
        else:
            assert outcome.error == LockError.INSUFFICIENT_INVENTORY

    assert granted == 3
    assert service.cached_remaining(ItemType.TOUR, "T1") == 0


def test_insufficient_inventory_drops_the_new_lock(make_lock_service, cache):
    service = make_lock_service({("flight", "AI-101"): 1})

    outcome = service.acquire(ItemType.FLIGHT, "AI-101", 2)

    assert outcome.error == LockError.INSUFFICIENT_INVENTORY
    assert outcome.remaining == 1
    assert cache.get(lock_key(ItemType.FLIGHT, "AI-101")) is None


def test_unknown_item_is_rejected(make_lock_service, cache):
    service = make_lock_service({})

    outcome = service.acquire(HOTEL, "missing", 1)

    assert outcome.error == LockError.ITEM_NOT_FOUND
    assert cache.get(lock_key(HOTEL, "missing")) is None


def test_non_positive_quantity_is_rejected(make_lock_service):
    service = make_lock_service({("hotel", "H1"): 2})

    with pytest.raises(ValueError):
        service.acquire(HOTEL, "H1", 0)


def test_cache_outage_fails_closed(make_lock_service, cache):
    service = make_lock_service({("hotel", "H1"): 2})
    cache.available = False

    with pytest.raises(CacheUnavailableError):
        service.acquire(HOTEL, "H1", 1)


def test_counter_ttl_is_never_shorter_than_lock_ttl(make_lock_service, cache):
    service = make_lock_service(
        {("hotel", "H1"): 5},
        lock_ttl_seconds=600,
        counter_ttl_seconds=60,
    )

    service.acquire(HOTEL, "H1", 1)

    assert cache.ttl(counter_key(HOTEL, "H1")) >= cache.ttl(lock_key(HOTEL, "H1"))


# ---------------------
# RELEASE
# ---------------------

def test_release_twice_credits_once(make_lock_service):
    service = make_lock_service({("hotel", "H1"): 5})
    outcome = service.acquire(HOTEL, "H1", 2)

    assert service.release(HOTEL, "H1", outcome.lock_id) is True
    assert service.release(HOTEL, "H1", outcome.lock_id) is False
    assert service.cached_remaining(HOTEL, "H1") == 5


def test_release_with_stale_lock_id_is_a_no_op(make_lock_service, cache):
    service = make_lock_service({("hotel", "H1"): 5})
    outcome = service.acquire(HOTEL, "H1", 2)

    assert service.release(HOTEL, "H1", "not-the-holder") is False
    assert service.release(HOTEL, "H1", None) is False
    assert cache.get(lock_key(HOTEL, "H1"))["lock_id"] == outcome.lock_id
    assert service.cached_remaining(HOTEL, "H1") == 3


def test_expired_holder_cannot_release_the_next_lock(make_lock_service, cache):
    service = make_lock_service({("hotel", "H1"): 5}, lock_ttl_seconds=60, counter_ttl_seconds=600)
    abandoned = service.acquire(HOTEL, "H1", 1)

    cache.advance(61)
    current = service.acquire(HOTEL, "H1", 1)
    assert current.ok

    assert service.release(HOTEL, "H1", abandoned.lock_id) is False
    assert service.get_lock(HOTEL, "H1").lock_id == current.lock_id


# ---------------------
# COMMIT / EXTEND
# ---------------------

def test_commit_removes_lock_without_crediting(make_lock_service, cache):
    service = make_lock_service({("hotel", "H1"): 5})
    outcome = service.acquire(HOTEL, "H1", 2)

    assert service.commit(HOTEL, "H1", outcome.lock_id) is True
    assert cache.get(lock_key(HOTEL, "H1")) is None
    assert service.cached_remaining(HOTEL, "H1") == 3


def test_commit_after_expiry_invalidates_counter(make_lock_service, cache):
    service = make_lock_service({("hotel", "H1"): 5}, lock_ttl_seconds=60, counter_ttl_seconds=600)
    outcome = service.acquire(HOTEL, "H1", 2)
    cache.advance(61)

    assert service.commit(HOTEL, "H1", outcome.lock_id) is False
    assert service.cached_remaining(HOTEL, "H1") is None


def test_extend_refreshes_ttl_for_holder_only(make_lock_service, cache):
    service = make_lock_service({("hotel", "H1"): 5}, lock_ttl_seconds=100, counter_ttl_seconds=100)
    outcome = service.acquire(HOTEL, "H1", 1)

    cache.advance(80)
    assert service.extend(HOTEL, "H1", "someone-else") is False
    assert service.extend(HOTEL, "H1", outcome.lock_id) is True

    cache.advance(80)
    assert service.get_lock(HOTEL, "H1").lock_id == outcome.lock_id
    assert service.cached_remaining(HOTEL, "H1") == 4


def test_extend_moves_recorded_expiry(make_lock_service):
    now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
    service = make_lock_service({("hotel", "H1"): 5}, lock_ttl_seconds=600, clock=lambda: now[0])
    outcome = service.acquire(HOTEL, "H1", 1)

    now[0] += timedelta(seconds=300)
    assert service.extend(HOTEL, "H1", outcome.lock_id) is True

    lock = service.get_lock(HOTEL, "H1")
    assert lock.expires_at == now[0] + timedelta(seconds=600)
    assert lock.locked_at == outcome.lock.locked_at


def test_stale_holder_cannot_extend_the_next_lock(make_lock_service, cache, monkeypatch):
    service = make_lock_service({("hotel", "H1"): 5}, lock_ttl_seconds=100, counter_ttl_seconds=100)
    key = lock_key(HOTEL, "H1")
    old = service.acquire(HOTEL, "H1", 1)
    old_record = cache.get(key)
    service.release(HOTEL, "H1", old.lock_id)
    new = service.acquire(HOTEL, "H1", 1)
    cache.advance(60)

    # The old holder read its record just before the release above.
    real_get = cache.get
    monkeypatch.setattr(cache, "get", lambda k: old_record if k == key else real_get(k))

    assert service.extend(HOTEL, "H1", old.lock_id) is False

    monkeypatch.undo()
    assert cache.ttl(key) == 40
    assert service.get_lock(HOTEL, "H1").lock_id == new.lock_id


def test_extend_missing_lock_returns_false(make_lock_service):
    service = make_lock_service({("hotel", "H1"): 5})

    assert service.extend(HOTEL, "H1", "whatever") is False
