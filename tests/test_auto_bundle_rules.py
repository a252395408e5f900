import logging

import pytest

from fakes import SHOP, FakeBundleStore, FakeCatalog, FakeDiscountStore
from services.auto_bundle_rules import (
    MAX_PREVIEW_PRODUCTS,
    AutoBundleRuleEngine,
    auto_bundle_name,
    matches_price,
    matches_tags,
)
from services.discount_sync import DiscountSynchronizer
from services.errors import NotFoundError, RemoteCreateError, ValidationError
from services.shopify.catalog import CatalogProduct


def product(n, price=10.0, tags=("summer",)):
    return CatalogProduct(id=f"gid://shopify/Product/{n}", title=f"Product {n}", tags=list(tags), price=price)


@pytest.fixture
def catalog():
    return FakeCatalog({
        "gid://shopify/Collection/summer": [product(1, 12.0), product(2, 25.0), product(3, 40.0, tags=("winter",))],
        "gid://shopify/Collection/sale": [product(2, 25.0), product(4, 5.0), product(5, 80.0)],
    })


@pytest.fixture
def engine(storage, locks, catalog):
    synchronizer = DiscountSynchronizer(FakeBundleStore(SHOP), FakeDiscountStore(), storage=storage, locks=locks)
    return AutoBundleRuleEngine(synchronizer, catalog, storage=storage, locks=locks)


# ---------------------------------------------------------------------------
# matching helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "price, low, high, expected",
    [
        (10, 0, 0, True),
        (10, 5, 0, True),
        (4, 5, 0, False),
        (10, 5, 10, True),
        (10.01, 5, 10, False),
        (5, 5, 10, True),
    ],
)
def test_matches_price(price, low, high, expected):
    assert matches_price(price, low, high) is expected


def test_matches_tags_any_of():
    assert matches_tags(["a", "b"], []) is True
    assert matches_tags(["a", "b"], ["b", "z"]) is True
    assert matches_tags(["a"], ["z"]) is False
    assert matches_tags([], ["z"]) is False


# ---------------------------------------------------------------------------
# preview
# ---------------------------------------------------------------------------

@pytest.mark.anyio
async def test_preview_with_no_collections_scans_everything_and_dedupes(engine, catalog):
    preview = await engine.preview_rule({"minPrice": 10, "maxPrice": 50})

    assert [p["id"] for p in preview["matchingProducts"]] == [
        "gid://shopify/Product/1",
        "gid://shopify/Product/2",
        "gid://shopify/Product/3",
    ]
    assert preview["totalMatches"] == 3
    assert preview["scannedProducts"] == 6
    assert preview["meetsMinimum"] is True
    assert preview["criteria"]["collections"] == "All collections"
    assert catalog.count("list_collections") == 1


@pytest.mark.anyio
async def test_preview_filters_by_tags_and_collection(engine, catalog):
    preview = await engine.preview_rule({
        "collections": ["gid://shopify/Collection/summer"],
        "tags": "summer",
        "minProducts": 3,
    })

    assert [p["id"] for p in preview["matchingProducts"]] == ["gid://shopify/Product/1", "gid://shopify/Product/2"]
    assert preview["meetsMinimum"] is False
    assert catalog.count("list_collections") == 0


@pytest.mark.anyio
async def test_preview_caps_listed_products(storage, locks):
    big = FakeCatalog({"all": [product(n) for n in range(1, 31)]})
    engine = AutoBundleRuleEngine(
        DiscountSynchronizer(FakeBundleStore(SHOP), FakeDiscountStore(), storage=storage, locks=locks),
        big,
        storage=storage,
        locks=locks,
    )

    preview = await engine.preview_rule({})

    assert len(preview["matchingProducts"]) == MAX_PREVIEW_PRODUCTS
    assert preview["totalMatches"] == 30


@pytest.mark.anyio
async def test_preview_rejects_bad_price_range(engine):
    with pytest.raises(ValidationError):
        await engine.preview_rule({"minPrice": 50, "maxPrice": 10})


# ---------------------------------------------------------------------------
# rule lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.anyio
async def test_create_rule_generates_bundle_and_discount(engine, storage):
    result = await engine.create_rule(
        {"name": "Summer picks", "tags": ["summer"], "minProducts": 2, "discountPercent": 12},
        shop=SHOP,
    )

    assert result["generated"] is True
    assert result["isActive"] is True
    assert result["matchedProducts"] == 4

    bundles = engine.synchronizer.bundles.bundles
    bundle = bundles[result["bundleId"]]
    assert bundle.name == auto_bundle_name(result["id"]) == f"auto-rule-{result['id']}"
    assert bundle.title == "Auto Bundle: Summer picks"
    assert bundle.product_ids == [
        "gid://shopify/Product/1",
        "gid://shopify/Product/2",
        "gid://shopify/Product/4",
        "gid://shopify/Product/5",
    ]

    discount = engine.synchronizer.discounts.discounts[result["discountId"]]
    assert discount["min_quantity"] == 2
    assert discount["percent"] == 12

    rule = await storage.get_rule(result["id"])
    assert rule.bundle_id == result["bundleId"]
    link = await storage.get_discount_link(result["bundleId"])
    assert link.bundle_name == bundle.name


@pytest.mark.anyio
async def test_rule_with_too_few_matches_generates_nothing(engine):
    result = await engine.create_rule({"name": "Rare", "tags": ["winter"], "minProducts": 2}, shop=SHOP)

    assert result["generated"] is False
    assert result["matchedProducts"] == 1
    assert result["bundleId"] is None
    assert engine.synchronizer.bundles.bundles == {}


@pytest.mark.anyio
async def test_generation_failure_keeps_rule(engine, storage):
    engine.synchronizer.bundles.fail_on["create"] = RemoteCreateError("bundle", ["Type not found"])

    result = await engine.create_rule({"name": "Broken"}, shop=SHOP)

    assert result["generated"] is False
    assert "Type not found" in result["error"]
    assert await storage.get_rule(result["id"]) is not None


@pytest.mark.anyio
async def test_toggle_off_and_on_reuses_the_same_discount(engine, storage):
    created = await engine.create_rule({"name": "Summer picks", "tags": ["summer"]}, shop=SHOP)
    discounts = engine.synchronizer.discounts

    off = await engine.toggle_rule(created["id"], False, shop=SHOP)
    assert off["isActive"] is False
    assert discounts.discounts[created["discountId"]]["active"] is False

    on = await engine.toggle_rule(created["id"], True, shop=SHOP)
    assert on["isActive"] is True
    assert on["reused"] is True
    assert on["discountId"] == created["discountId"]
    assert discounts.discounts[created["discountId"]]["active"] is True

    assert discounts.count("create") == 1
    assert len(engine.synchronizer.bundles.bundles) == 1
    assert len(await storage.list_discount_links(SHOP)) == 1


@pytest.mark.anyio
async def test_toggle_unknown_rule_is_not_found(engine):
    with pytest.raises(NotFoundError):
        await engine.toggle_rule("missing", True, shop=SHOP)


@pytest.mark.anyio
async def test_delete_rule_removes_generated_bundle(engine, storage):
    created = await engine.create_rule({"name": "Summer picks"}, shop=SHOP)

    await engine.delete_rule(created["id"], shop=SHOP)

    assert engine.synchronizer.bundles.bundles == {}
    assert engine.synchronizer.discounts.discounts == {}
    assert await storage.get_rule(created["id"]) is None
    assert await storage.list_discount_links(SHOP) == []


@pytest.mark.anyio
async def test_delete_rule_without_bundle_logs_and_deletes_rule(engine, storage, caplog):
    created = await engine.create_rule({"name": "Rare", "tags": ["winter"]}, shop=SHOP)

    with caplog.at_level(logging.WARNING, logger="services.auto_bundle_rules"):
        await engine.delete_rule(created["id"], shop=SHOP)

    assert await storage.get_rule(created["id"]) is None
    assert any("deleting rule anyway" in r.getMessage() for r in caplog.records)


@pytest.mark.anyio
async def test_delete_rule_after_its_bundle_was_deleted_directly(engine, storage, caplog):
    created = await engine.create_rule({"name": "Summer picks"}, shop=SHOP)
    await engine.synchronizer.delete_bundle(created["bundleId"], SHOP)

    with caplog.at_level(logging.WARNING, logger="services.auto_bundle_rules"):
        await engine.delete_rule(created["id"], shop=SHOP)

    assert await storage.get_rule(created["id"]) is None
    assert engine.synchronizer.bundles.count("delete") == 2
    assert any(created["bundleId"] in r.getMessage() for r in caplog.records)


@pytest.mark.anyio
async def test_sync_rules_isolates_failures(engine, storage):
    good = await storage.create_rule({"shop": SHOP, "name": "Good", "tags": ["summer"]})
    await storage.create_rule({"shop": SHOP, "name": "Bad"})
    await storage.create_rule({"shop": SHOP, "name": "Paused", "is_active": False})

    bundles = engine.synchronizer.bundles
    original = bundles.create_bundle

    async def reject_bad(bundle_input):
        if bundle_input.title == "Auto Bundle: Bad":
            raise RemoteCreateError("bundle", ["Invalid field"])
        return await original(bundle_input)

    bundles.create_bundle = reject_bad

    result = await engine.sync_rules(SHOP)

    assert result["success"] == ["Good"]
    assert [f["name"] for f in result["failed"]] == ["Bad"]
    assert "Invalid field" in result["failed"][0]["error"]
    assert [b.title for b in bundles.bundles.values()] == ["Auto Bundle: Good"]
    assert (await storage.get_rule(good.id)).bundle_id is not None

    again = await engine.sync_rules(SHOP)
    assert "Good" in again["success"]
    assert len(bundles.bundles) == 1
