from crm_admin.cache import ALL, QueryCache, make_key
from crm_admin.query import Filter, QueryOptions


def test_hit_within_ttl_and_miss_after(clock):
    cache = QueryCache(ttl=300, clock=clock)
    key = make_key("leads", None, {"limit": 5})
    cache.cache_result(key, [1, 2])

    clock.advance(299)
    assert cache.get(key) == [1, 2]

    clock.advance(1)
    assert cache.get(key) is None
    assert key not in cache


def test_fifo_eviction_at_capacity(clock):
    cache = QueryCache(ttl=300, max_entries=100, clock=clock)
    keys = [make_key("leads", f"d{i}") for i in range(101)]
    for i, key in enumerate(keys):
        cache.cache_result(key, i)

    assert len(cache) == 100
    assert keys[0] not in cache
    assert all(k in cache for k in keys[1:])


def test_recaching_does_not_refresh_position(clock):
    cache = QueryCache(ttl=300, max_entries=2, clock=clock)
    a, b, c = make_key("x", "a"), make_key("x", "b"), make_key("x", "c")
    cache.cache_result(a, 1)
    cache.cache_result(b, 2)
    cache.cache_result(a, 3)
    cache.cache_result(c, 4)

    assert a not in cache
    assert cache.get(b) == 2
    assert cache.get(c) == 4


def test_lookup_distinguishes_cached_none(clock):
    cache = QueryCache(clock=clock)
    key = make_key("leads", "missing")
    cache.cache_result(key, None)
    assert cache.lookup(key) == (True, None)
    assert cache.lookup(make_key("leads", "other")) == (False, None)


def test_key_signature_ignores_control_flags():
    base = QueryOptions(filters=[Filter(field="status", value="newLead")])
    flagged = base.model_copy(update={"cache": False, "retry": False})
    assert make_key("leads", None, base.signature()) == make_key("leads", None, flagged.signature())
    assert make_key("leads").doc_id == ALL


def test_invalidate_with_doc_id_keeps_other_documents(clock):
    cache = QueryCache(clock=clock)
    listing = make_key("leads", None, "{}")
    one, two = make_key("leads", "one"), make_key("leads", "two")
    agg = make_key("leads", "aggregate:{}")
    user = make_key("users", "u1")
    for key in (listing, one, two, agg, user):
        cache.cache_result(key, "v")

    dropped = cache.invalidate("leads", "one")

    assert dropped == 3
    assert two in cache and user in cache
    assert listing not in cache and one not in cache and agg not in cache


def test_invalidate_collection_and_stats(clock):
    cache = QueryCache(clock=clock)
    cache.cache_result(make_key("leads", "a"), 1)
    cache.cache_result(make_key("users", "b"), 2)
    cache.invalidate("leads")
    assert len(cache) == 1

    cache.get(make_key("users", "b"))
    cache.get(make_key("leads", "a"))
    stats = cache.stats()
    assert stats["hits"] == 1 and stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
