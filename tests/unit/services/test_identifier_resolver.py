# Identifier resolution tests
import asyncio

import pytest

from stocksync.core.exceptions import PermanentExternalError, TransientExternalError
from stocksync.integrations.base import CandidateProduct, ChannelVariant, InventoryItemInfo
from stocksync.services.identifier_resolver import MISSING_IDENTIFIERS, IdentifierResolver
from stocksync.services.inventory_store import InventoryFilter
from tests.mocks.factories import make_record


async def load_page(store, limit=100):
    return await store.find_page(InventoryFilter(), None, limit)


"""
1. Exact key lookups
"""

@pytest.mark.asyncio
async def test_resolves_exact_keys_in_one_bulk_lookup(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    inventory_store.add(make_record("noxa_A2-Black-4"))
    mock_channel.add_variant("noxa_A1-White-2", "gid://v/1", "gid://inv/1", quantity=3)
    mock_channel.add_variant("noxa_A2-Black-4", "gid://v/2", "gid://inv/2", quantity=0)

    report = await resolver.resolve(await load_page(inventory_store))

    assert report.attempted == 2
    assert report.succeeded == 2
    assert report.lookups == 1
    assert mock_channel.lookup_calls == [["noxa_A1-White-2", "noxa_A2-Black-4"]]

    stored = inventory_store.get_by_key("noxa_A1-White-2")
    assert stored.sync_status == "success"
    assert stored.sync_error is None
    assert stored.channel_variant_id == "gid://v/1"
    assert stored.channel_inventory_item_id == "gid://inv/1"
    assert stored.last_known_channel_quantity == 3
    assert stored.last_synced_at is not None


@pytest.mark.asyncio
async def test_updatable_records_are_not_looked_up(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2", channel_variant_id="v", channel_inventory_item_id="i"))

    report = await resolver.resolve(await load_page(inventory_store))

    assert report.attempted == 0
    assert mock_channel.lookup_calls == []
    assert inventory_store.save_calls == 0


@pytest.mark.asyncio
async def test_secondary_lookup_fills_inventory_item(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    mock_channel.add_variant("noxa_A1-White-2", "gid://v/1")
    mock_channel.inventory_items["gid://v/1"] = InventoryItemInfo(inventory_item_id="gid://inv/1", quantity=7)

    report = await resolver.resolve(await load_page(inventory_store))

    assert report.succeeded == 1
    assert report.lookups == 2
    assert mock_channel.inventory_calls == ["gid://v/1"]
    stored = inventory_store.get_by_key("noxa_A1-White-2")
    assert stored.channel_inventory_item_id == "gid://inv/1"
    assert stored.last_known_channel_quantity == 7


@pytest.mark.asyncio
async def test_unmatched_record_is_marked_failed(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_ZZ9-Red-S"))

    report = await resolver.resolve(await load_page(inventory_store))

    assert report.failed == 1
    stored = inventory_store.get_by_key("noxa_ZZ9-Red-S")
    assert stored.sync_status == "failed"
    assert stored.sync_error == MISSING_IDENTIFIERS


@pytest.mark.asyncio
async def test_channel_sku_matched_case_insensitively(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    mock_channel.add_variant("NOXA_A1-WHITE-2", "gid://v/1", "gid://inv/1")

    report = await resolver.resolve(await load_page(inventory_store))

    assert report.succeeded == 1
    assert inventory_store.get_by_key("noxa_A1-White-2").channel_variant_id == "gid://v/1"


"""
2. Failure isolation
"""

@pytest.mark.asyncio
async def test_failed_sub_batch_does_not_stop_the_rest(inventory_store, mock_channel, fast_caller):
    keys = [f"noxa_B{index}-White-2" for index in range(5)]
    for index, key in enumerate(keys):
        inventory_store.add(make_record(key))
        mock_channel.add_variant(key, f"gid://v/{index}", f"gid://inv/{index}")
    mock_channel.lookup_failures = [PermanentExternalError("Shopify rejected the request (403)", status_code=403)]
    resolver = IdentifierResolver(inventory_store, mock_channel, caller=fast_caller,
                                  sub_batch_size=2, sub_batch_delay=0)

    report = await resolver.resolve(await load_page(inventory_store))

    assert len(mock_channel.lookup_calls) == 3
    assert report.failed == 2
    assert report.succeeded == 3
    assert len(report.errors) == 1
    first = inventory_store.get_by_key(keys[0])
    assert first.sync_status == "failed"
    assert "PermanentExternalError" in first.sync_error
    assert inventory_store.get_by_key(keys[4]).sync_status == "success"


@pytest.mark.asyncio
async def test_exhausted_transient_errors_leave_records_unresolved(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    mock_channel.add_variant("noxa_A1-White-2", "gid://v/1", "gid://inv/1")
    mock_channel.lookup_failures = [TransientExternalError("Shopify returned 503", status_code=503)] * 3

    report = await resolver.resolve(await load_page(inventory_store))

    assert len(mock_channel.lookup_calls) == 3
    assert report.unresolved == 1
    stored = inventory_store.get_by_key("noxa_A1-White-2")
    assert stored.sync_status == "unresolved"
    assert "503" in stored.sync_error
    assert stored.channel_variant_id is None


@pytest.mark.asyncio
async def test_transient_error_then_success_resolves(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    mock_channel.add_variant("noxa_A1-White-2", "gid://v/1", "gid://inv/1")
    mock_channel.lookup_failures = [TransientExternalError("timeout")]

    report = await resolver.resolve(await load_page(inventory_store))

    assert report.succeeded == 1
    assert len(mock_channel.lookup_calls) == 2


"""
3. Fuzzy fallback
"""

def dress_product():
    return CandidateProduct(
        product_id="gid://p/1",
        title="Noxa E467W Dress White",
        variants=[
            ChannelVariant(sku="E467W-WHT-2", variant_id="gid://v/white-2",
                           inventory_item_id="gid://inv/white-2", title="White / 2"),
            ChannelVariant(sku="E467W-BLK-2", variant_id="gid://v/black-2",
                           inventory_item_id="gid://inv/black-2", title="Black / 2"),
        ],
    )


@pytest.mark.asyncio
async def test_fuzzy_match_accepts_single_agreeing_variant(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_E467W-White-2"))
    mock_channel.search_enabled = True
    mock_channel.products = [dress_product()]

    report = await resolver.resolve(await load_page(inventory_store))

    assert mock_channel.search_calls == ["E467W"]
    assert report.fuzzy_matches == 1
    assert report.succeeded == 1
    stored = inventory_store.get_by_key("noxa_E467W-White-2")
    assert stored.channel_variant_id == "gid://v/white-2"
    assert stored.channel_inventory_item_id == "gid://inv/white-2"


@pytest.mark.asyncio
async def test_fuzzy_match_disabled_without_threshold(inventory_store, mock_channel, fast_caller):
    inventory_store.add(make_record("noxa_E467W-White-2"))
    mock_channel.search_enabled = True
    mock_channel.products = [dress_product()]
    resolver = IdentifierResolver(inventory_store, mock_channel, caller=fast_caller,
                                  sub_batch_delay=0, fuzzy_threshold=None)

    report = await resolver.resolve(await load_page(inventory_store))

    assert mock_channel.search_calls == []
    assert report.failed == 1


"""
4. Idempotence and cancellation
"""

@pytest.mark.asyncio
async def test_resolving_twice_is_idempotent(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    mock_channel.add_variant("noxa_A1-White-2", "gid://v/1", "gid://inv/1")

    await resolver.resolve(await load_page(inventory_store))
    first = inventory_store.get_by_key("noxa_A1-White-2")
    report = await resolver.resolve(await load_page(inventory_store))
    second = inventory_store.get_by_key("noxa_A1-White-2")

    assert report.attempted == 0
    assert len(mock_channel.lookup_calls) == 1
    assert (second.channel_variant_id, second.channel_inventory_item_id, second.sync_status) == \
        (first.channel_variant_id, first.channel_inventory_item_id, first.sync_status)
    assert second.last_synced_at == first.last_synced_at


@pytest.mark.asyncio
async def test_cancel_before_start_issues_no_lookups(inventory_store, mock_channel, resolver):
    inventory_store.add(make_record("noxa_A1-White-2"))
    token = asyncio.Event()
    token.set()

    report = await resolver.resolve(await load_page(inventory_store), cancel_token=token)

    assert report.cancelled
    assert mock_channel.lookup_calls == []


@pytest.mark.asyncio
async def test_cancel_mid_run_keeps_completed_work(inventory_store, mock_channel, fast_caller):
    keys = ["noxa_C1-White-2", "noxa_C2-White-2", "noxa_C3-White-2"]
    for index, key in enumerate(keys):
        inventory_store.add(make_record(key))
        mock_channel.add_variant(key, f"gid://v/{index}", f"gid://inv/{index}")
    token = asyncio.Event()

    async def cancel_after_first(_keys):
        token.set()

    mock_channel.before_lookup = cancel_after_first
    resolver = IdentifierResolver(inventory_store, mock_channel, caller=fast_caller,
                                  sub_batch_size=1, sub_batch_delay=0)

    report = await resolver.resolve(await load_page(inventory_store), cancel_token=token)

    assert report.cancelled
    assert len(mock_channel.lookup_calls) == 1
    assert inventory_store.get_by_key(keys[0]).sync_status == "success"
    assert inventory_store.get_by_key(keys[1]).sync_status == "unresolved"
