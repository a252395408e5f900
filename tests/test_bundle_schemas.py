import pytest

from schemas.bundle_schemas import (
    Bundle,
    BundleComponent,
    distinct_product_ids,
    parse_bundle_input,
    parse_bundle_patch,
    validate_bundle_input,
)
from schemas.rule_schemas import parse_rule_criteria
from services.errors import ValidationError

SHOP = "test-shop.myshopify.com"


def payload(**overrides):
    data = {
        "name": "Starter Kit",
        "title": "Starter Kit Deal",
        "discountPercent": "20",
        "components": [
            {"productId": "gid://shopify/Product/1", "quantity": 2},
            "gid://shopify/Product/2",
        ],
    }
    data.update(overrides)
    return data


def test_camel_and_snake_case_are_equivalent():
    camel = parse_bundle_input(payload(), shop=SHOP)
    snake = parse_bundle_input(
        {
            "bundleName": "Starter Kit",
            "bundleTitle": "Starter Kit Deal",
            "discount_percent": 20,
            "products": [
                {"product_id": "gid://shopify/Product/1", "quantity": 2},
                {"id": "gid://shopify/Product/2"},
            ],
            "shop": SHOP,
        }
    )

    assert camel == snake
    assert camel.discount_percent == 20.0
    assert camel.min_quantity == 3
    assert camel.product_ids == ["gid://shopify/Product/1", "gid://shopify/Product/2"]


def test_all_errors_are_reported_together():
    with pytest.raises(ValidationError) as exc_info:
        parse_bundle_input({"discountPercent": -5, "components": [], "status": "live"}, shop=SHOP)

    assert exc_info.value.errors == [
        "Missing required field: name",
        "Missing required field: title",
        "Discount must be between 0 and 100",
        "Missing required field: components",
        "Invalid status: live",
    ]
    assert exc_info.value.status_code == 400
    assert exc_info.value.to_dict()["error"] == "ValidationError"


def test_duplicate_product_does_not_count_twice():
    ok, errors = validate_bundle_input(
        payload(components=["gid://shopify/Product/1", {"productId": "gid://shopify/Product/1", "quantity": 3}],
                shop=SHOP)
    )

    assert ok is False
    assert errors == ["Bundle must have at least 2 distinct products"]


@pytest.mark.parametrize(
    "component, message",
    [
        ({"productId": "gid://shopify/Product/3", "quantity": 0}, "Component 1: quantity must be at least 1"),
        ({"productId": "gid://shopify/Product/3", "quantity": "many"}, "Component 1: quantity must be an integer"),
        ({"quantity": 1}, "Component 1: missing productId"),
        (42, "Component 1: must be a product id or an object"),
    ],
)
def test_component_errors(component, message):
    with pytest.raises(ValidationError) as exc_info:
        parse_bundle_input(
            payload(components=["gid://shopify/Product/1", component, "gid://shopify/Product/2"]), shop=SHOP
        )
    assert exc_info.value.errors == [message]


def test_shop_is_required():
    with pytest.raises(ValidationError) as exc_info:
        parse_bundle_input(payload())
    assert exc_info.value.errors == ["Missing required field: shop"]


def test_explicit_min_quantity_overrides_component_sum():
    bundle_input = parse_bundle_input(payload(minQuantity=5), shop=SHOP)
    assert bundle_input.min_quantity == 5

    with pytest.raises(ValidationError):
        parse_bundle_input(payload(minQuantity=0), shop=SHOP)


def test_patch_only_validates_present_keys():
    patch = parse_bundle_patch({"discountPercent": 30})

    assert patch.discount_percent == 30.0
    assert patch.components is None
    assert patch.touches_components is False

    with pytest.raises(ValidationError):
        parse_bundle_patch({"discountPercent": 101})


def test_patch_apply_keeps_untouched_fields():
    bundle = Bundle(
        id="gid://shopify/Metaobject/1",
        name="Starter Kit",
        title="Starter Kit Deal",
        discount_percent=20,
        components=[BundleComponent("a"), BundleComponent("b")],
        shop=SHOP,
    )

    updated = bundle.apply(parse_bundle_patch({"components": ["c", "d"], "status": "paused"}))

    assert updated.product_ids == ["c", "d"]
    assert updated.status == "PAUSED"
    assert updated.is_active is False
    assert updated.title == "Starter Kit Deal"
    assert bundle.product_ids == ["a", "b"]


def test_distinct_product_ids_keeps_first_seen_order():
    components = [BundleComponent("b"), BundleComponent("a"), BundleComponent("b")]
    assert distinct_product_ids(components) == ["b", "a"]


def test_rule_criteria_defaults_and_errors():
    criteria = parse_rule_criteria({"name": "All", "tags": "summer, sale"})
    assert criteria.tags == ["summer", "sale"]
    assert criteria.min_products == 2
    assert criteria.summary()["priceRange"] == "0 - ∞"

    with pytest.raises(ValidationError) as exc_info:
        parse_rule_criteria({"minProducts": 0, "discountPercent": "x"})
    assert "Rule name is required" in exc_info.value.errors
    assert "minProducts must be a positive integer" in exc_info.value.errors


@pytest.mark.parametrize("value", ["nan", "inf", float("-inf")])
def test_rule_criteria_rejects_non_finite_numbers(value):
    with pytest.raises(ValidationError) as exc_info:
        parse_rule_criteria({"name": "Odd", "minProducts": value, "maxPrice": value})

    assert f"minProducts must be a finite number, got {value!r}" in exc_info.value.errors
    assert f"maxPrice must be a finite number, got {value!r}" in exc_info.value.errors
