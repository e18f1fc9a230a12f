import asyncio

from stocksync.erp.models import SkuMappingRow
from stocksync.mapping.resolver import MappingCache, MappingIndex


def test_unmapped_sku_returns_empty_and_resolve_falls_back():
    index = MappingIndex.from_rows([{"erp_sku": "A1", "storefront_sku": "A1-2PK"}])
    assert index.get_storefront_skus("ZZZ") == []
    assert index.resolve("ZZZ") == ["ZZZ"]


def test_empty_source_is_identity():
    index = MappingIndex.from_rows([])
    assert index.is_empty
    assert len(index) == 0
    for sku in ("X", "abc-1", ""):
        assert index.get_storefront_skus(sku) == []
        assert index.resolve(sku) == [sku]


def test_fan_out_dedupes_storefront_skus_case_insensitively():
    index = MappingIndex.from_rows([
        SkuMappingRow(erp_sku="JNR1802", storefront_sku="jnr1802-1pk"),
        SkuMappingRow(erp_sku="JNR1802", storefront_sku="JNR1802-2PK"),
        {"erp_sku": "JNR1802", "storefront_sku": "JNR1802-1PK"},  # duplicate, different case
    ])
    assert index.get_storefront_skus("JNR1802") == ["jnr1802-1pk", "JNR1802-2PK"]
    assert len(index) == 2


def test_storefront_sku_traces_back_to_one_erp_sku():
    index = MappingIndex.from_rows([
        {"erp_sku": "A", "storefront_sku": "SHARED"},
        {"erp_sku": "B", "storefront_sku": "shared"},
        {"erp_sku": "", "storefront_sku": "X"},
    ])
    assert index.get_storefront_skus("A") == ["SHARED"]
    assert index.get_storefront_skus("B") == []
    assert index.to_rows() == [{"erp_sku": "A", "storefront_sku": "SHARED"}]


def test_mapping_cache_is_explicit_and_expires():
    now = [1000.0]
    cache = MappingCache(ttl_seconds=60, clock=lambda: now[0])
    assert cache.get() is None
    assert not cache.is_fresh()

    cache.populate([{"erp_sku": "A", "storefront_sku": "A-1"}])
    assert cache.is_fresh()
    assert cache.get().resolve("A") == ["A-1"]

    now[0] += 61
    assert cache.get() is None
    cache.invalidate()
    assert cache.value is None and cache.loaded_at is None


def test_mapping_cache_get_or_load_calls_loader_once_while_fresh():
    now = [0.0]
    cache = MappingCache(ttl_seconds=300, clock=lambda: now[0])
    calls = []

    async def loader():
        calls.append(1)
        return [{"erp_sku": "A", "storefront_sku": "A-1"}]

    async def scenario():
        first = await cache.get_or_load(loader)
        second = await cache.get_or_load(loader)
        now[0] = 301
        third = await cache.get_or_load(loader)
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first is second
    assert third is not first
    assert len(calls) == 2
