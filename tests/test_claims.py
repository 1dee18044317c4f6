from __future__ import annotations

import os
import threading
import time

import pytest

from courier.errors import AlreadyClaimed, ReadError
from courier.memory.claims import ClaimCoordinator
from courier.memory.inbox import MailboxStore


def test_claim_moves_request_out_of_pending(store, claims, make_request):
    store.put(make_request("r1"))

    claims.claim("r1")

    assert claims.is_claimed("r1")
    assert store.list_pending() == []
    assert store.get_claimed("r1").content == "hi"


def test_claim_of_missing_request_raises_already_claimed(claims):
    with pytest.raises(AlreadyClaimed):
        claims.claim("ghost")


def test_second_claim_loses(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")

    with pytest.raises(AlreadyClaimed):
        claims.claim("r1")


def test_concurrent_claims_have_exactly_one_winner(store, make_request):
    request_ids = [f"req-{i}" for i in range(25)]
    for i, request_id in enumerate(request_ids):
        store.put(make_request(request_id, timestamp=i))

    # Independent coordinators over the same directory, like separate processes.
    consumers = [ClaimCoordinator(MailboxStore(store.root)) for _ in range(4)]
    barrier = threading.Barrier(len(consumers))
    wins = {request_id: 0 for request_id in request_ids}
    losses = {request_id: 0 for request_id in request_ids}
    lock = threading.Lock()

    def consume(coordinator):
        barrier.wait()
        for request_id in request_ids:
            try:
                coordinator.claim(request_id)
            except AlreadyClaimed:
                with lock:
                    losses[request_id] += 1
            else:
                with lock:
                    wins[request_id] += 1

    threads = [threading.Thread(target=consume, args=(c,)) for c in consumers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(count == 1 for count in wins.values())
    assert all(count == len(consumers) - 1 for count in losses.values())


def test_release_is_idempotent(store, claims, make_request):
    assert claims.release("never-claimed") is False

    store.put(make_request("r1"))
    claims.claim("r1")

    assert claims.release("r1") is True
    assert claims.release("r1") is False
    assert claims.release("r1") is False
    assert not claims.is_claimed("r1")


def test_unclaim_returns_request_to_pending(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")

    assert claims.unclaim("r1") is True
    assert store.list_pending() == ["r1"]
    assert claims.unclaim("r1") is False


def test_park_and_requeue(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")

    assert claims.park("r1") is True
    assert claims.list_dead() == ["r1"]
    assert store.list_pending() == []

    claims.requeue("r1")
    assert store.list_pending() == ["r1"]
    assert claims.list_dead() == []


def test_requeue_without_dead_letter_raises(claims):
    with pytest.raises(ReadError):
        claims.requeue("nothing")


def test_discard_is_idempotent(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")
    claims.park("r1")

    assert claims.discard("r1") is True
    assert claims.discard("r1") is False


def test_reclaim_expired_returns_stale_claims(store, claims, make_request):
    store.put(make_request("old"))
    store.put(make_request("new"))
    claims.claim("old")
    claims.claim("new")

    now = time.time()
    os.utime(store.claimed_path("old"), (now - 60, now - 60))
    os.utime(store.claimed_path("new"), (now - 10, now - 10))

    assert claims.reclaim_expired(50, now=now) == ["old"]
    assert store.list_pending() == ["old"]
    assert claims.list_claimed() == ["new"]


def test_reclaim_expired_disabled_with_zero_ttl(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")

    assert claims.reclaim_expired(0, now=time.time() + 10_000) == []
    assert claims.is_claimed("r1")


def test_fresh_claim_is_not_reclaimed(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")

    assert claims.reclaim_expired(60) == []


def test_reclaim_skips_ids_the_caller_is_working_on(store, claims, make_request):
    store.put(make_request("busy"))
    claims.claim("busy")
    os.utime(store.claimed_path("busy"), (0, 0))

    assert claims.reclaim_expired(60, skip={"busy"}) == []
    assert claims.is_claimed("busy")


def test_touch_renews_the_lease(store, claims, make_request):
    store.put(make_request("r1"))
    claims.claim("r1")
    os.utime(store.claimed_path("r1"), (0, 0))

    assert claims.touch("r1") is True
    assert claims.reclaim_expired(60) == []
    assert claims.touch("never-claimed") is False


def test_racing_reclaimers_do_not_steal_a_fresh_claim(store, make_request):
    first = ClaimCoordinator(MailboxStore(store.root))
    second = ClaimCoordinator(MailboxStore(store.root))
    store.put(make_request("r1"))
    first.claim("r1")
    os.utime(store.claimed_path("r1"), (0, 0))

    # second saw the stale claim, then first reclaims it and a new worker claims it
    assert second.claimed_at("r1") == 0
    assert first.reclaim_expired(60) == ["r1"]
    first.claim("r1")

    # second acts on what it saw earlier: the fresh claim must survive
    assert second._reclaim("r1", 60, time.time()) is False
    assert first.is_claimed("r1")
    assert store.list_pending() == []
    assert not [name for name in os.listdir(store.root) if name.startswith(".reclaim-")]


def test_only_one_reclaimer_wins_a_stale_claim(store, make_request):
    store.put(make_request("r1"))
    ClaimCoordinator(store).claim("r1")
    os.utime(store.claimed_path("r1"), (0, 0))
    reclaimers = [ClaimCoordinator(MailboxStore(store.root)) for _ in range(4)]
    barrier = threading.Barrier(len(reclaimers))
    results = []
    lock = threading.Lock()

    def reclaim(coordinator):
        barrier.wait()
        ids = coordinator.reclaim_expired(60)
        with lock:
            results.extend(ids)

    threads = [threading.Thread(target=reclaim, args=(c,)) for c in reclaimers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == ["r1"]
    assert store.list_pending() == ["r1"]
    assert store.list_claimed() == []


def test_claim_whose_marker_vanishes_before_stamping_is_lost(store, claims, make_request, monkeypatch):
    store.put(make_request("r1"))

    def utime_after_reclaim(path, *args, **kwargs):
        raise FileNotFoundError(path)

    monkeypatch.setattr(os, "utime", utime_after_reclaim)

    with pytest.raises(AlreadyClaimed):
        claims.claim("r1")
