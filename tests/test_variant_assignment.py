import asyncio
from datetime import timedelta

import pytest

from fakes import SHOP
from services.errors import NotFoundError, ValidationError
from services.variant_assignment import VariantAssignmentService
from utils import utcnow

pytestmark = pytest.mark.anyio

PRODUCT = "gid://shopify/Product/100"


@pytest.fixture
def service(storage, locks):
    return VariantAssignmentService(storage=storage, locks=locks, ttl_days=30)


async def _recommend(storage, variant_group_id="variant_a", confidence=0.8, product_id=PRODUCT, **extra):
    data = {
        "shop": SHOP,
        "product_id": product_id,
        "bundled_product_ids": ["gid://shopify/Product/200"],
        "confidence_score": confidence,
        "variant_group_id": variant_group_id,
    }
    data.update(extra)
    await storage.create_recommendations([data])


async def test_missing_recommendation_is_not_found(service, storage):
    with pytest.raises(NotFoundError):
        await service.assign(SHOP, "session-1", PRODUCT)
    assert await storage.list_assignments(SHOP, "session-1", PRODUCT) == []


async def test_inactive_recommendation_is_ignored(service, storage):
    await _recommend(storage, is_active=False)
    with pytest.raises(NotFoundError):
        await service.assign(SHOP, "session-1", PRODUCT)


async def test_missing_fields_are_rejected(service):
    with pytest.raises(ValidationError) as exc_info:
        await service.assign(SHOP, "", PRODUCT)
    assert exc_info.value.errors == ["Missing required field: sessionId"]


async def test_assignment_is_sticky(service, storage):
    await _recommend(storage)

    first = await service.assign(SHOP, "session-1", PRODUCT)
    second = await service.assign(SHOP, "session-1", PRODUCT)

    assert first["variantGroupId"] == "variant_a"
    assert first["existing"] is False
    assert second == {**first, "existing": True}


async def test_highest_confidence_recommendation_wins(service, storage):
    await _recommend(storage, variant_group_id="low", confidence=0.4)
    await _recommend(storage, variant_group_id="high", confidence=0.9)

    result = await service.assign(SHOP, "session-1", PRODUCT)

    assert result["variantGroupId"] == "high"


async def test_recommendation_without_group_gets_random_variant(service, storage):
    await _recommend(storage, variant_group_id=None)

    result = await service.assign(SHOP, "session-1", PRODUCT)

    assert result["variantGroupId"].startswith("variant_")
    assert len(result["variantGroupId"]) == len("variant_") + 9
    assert (await service.assign(SHOP, "session-1", PRODUCT))["variantGroupId"] == result["variantGroupId"]


async def test_expired_assignment_is_replaced_and_kept(service, storage):
    await _recommend(storage, variant_group_id="fresh")
    past = utcnow() - timedelta(days=40)
    await storage.insert_assignment({
        "shop": SHOP,
        "session_id": "session-1",
        "product_id": PRODUCT,
        "variant_group_id": "stale",
        "generation": 0,
        "assigned_at": past,
        "expires_at": past + timedelta(days=30),
    })

    result = await service.assign(SHOP, "session-1", PRODUCT)

    assert result["variantGroupId"] == "fresh"
    assert result["existing"] is False
    history = await storage.list_assignments(SHOP, "session-1", PRODUCT)
    assert [(row.generation, row.variant_group_id) for row in history] == [(0, "stale"), (1, "fresh")]


async def test_concurrent_first_visits_create_one_row(service, storage):
    await _recommend(storage, variant_group_id=None)

    results = await asyncio.gather(*(service.assign(SHOP, "session-1", PRODUCT) for _ in range(8)))

    assert len({r["variantGroupId"] for r in results}) == 1
    assert sum(1 for r in results if not r["existing"]) == 1
    assert len(await storage.list_assignments(SHOP, "session-1", PRODUCT)) == 1


async def test_lost_insert_race_returns_the_winner(service, storage, monkeypatch):
    await _recommend(storage, variant_group_id="loser")
    now = utcnow()
    await storage.insert_assignment({
        "shop": SHOP,
        "session_id": "session-1",
        "product_id": PRODUCT,
        "variant_group_id": "winner",
        "generation": 0,
        "assigned_at": now,
        "expires_at": now + timedelta(days=30),
    })

    original = storage.find_active_assignment
    calls = []

    async def miss_first_lookup(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return await original(*args, **kwargs)

    monkeypatch.setattr(storage, "find_active_assignment", miss_first_lookup)

    result = await service.assign(SHOP, "session-1", PRODUCT)

    assert result["variantGroupId"] == "winner"
    assert result["existing"] is True
    assert len(calls) == 2
    assert len(await storage.list_assignments(SHOP, "session-1", PRODUCT)) == 1


async def test_assignments_are_scoped_by_session(service, storage):
    await _recommend(storage, variant_group_id=None)

    a = await service.assign(SHOP, "session-a", PRODUCT)
    b = await service.assign(SHOP, "session-b", PRODUCT)

    assert a["existing"] is False and b["existing"] is False
    assert len(await storage.list_assignments(SHOP, "session-a", PRODUCT)) == 1
