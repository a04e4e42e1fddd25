import pytest

from services.errors import TransformError
from services.transforms import (
    PASSTHROUGH,
    PRODUCT,
    Transform,
    TransformRegistry,
    canonical_bytes,
    default_registry,
)


ROW = {
    "id": 7,
    "document_id": "7",
    "sku": "AB-100",
    "name": "  Hex bolt M8 ",
    "description": None,
    "manufacturer": "Bolts Ltd",
    "product_family": "Fasteners",
    "brand": "Bolts",
    "available_qty": 0,
    "moq": None,
    "list_price": "1.239",
    "unit_price": 1.1,
}


def test_product_document_shape():
    document = PRODUCT.apply(ROW)

    assert document == {
        "name": "Hex bolt M8",
        "sku": "AB-100",
        "description": "",
        "manufacturer": "Bolts Ltd",
        "productFamily": "Fasteners",
        "brand": "Bolts",
        "availableQty": 0,
        "inStock": False,
        "moq": 1,
        "listPrice": 1.24,
        "unitPrice": 1.1,
        "_tags": ["Bolts", "Fasteners"],
    }


def test_transform_is_deterministic():
    reordered = dict(reversed(list(ROW.items())))

    first = canonical_bytes(PRODUCT.apply(ROW))
    second = canonical_bytes(PRODUCT.apply(ROW))
    third = canonical_bytes(PRODUCT.apply(reordered))

    assert first == second == third


def test_missing_required_fields_raise():
    with pytest.raises(TransformError) as excinfo:
        PRODUCT.apply({"sku": "AB-100", "name": ""})
    assert "name" in str(excinfo.value)

    with pytest.raises(TransformError):
        PRODUCT.apply(None)


def test_transform_cannot_mutate_its_input():
    payload = {"sku": "AB-100", "tags": ["a"], "nested": {"k": 1}}

    def sneaky(row):
        row["nested"]["k"] = 2
        return dict(row)

    with pytest.raises(TransformError):
        Transform(name="sneaky", build=sneaky).apply(payload)
    assert payload == {"sku": "AB-100", "tags": ["a"], "nested": {"k": 1}}


def test_non_mapping_or_non_json_output_is_rejected():
    with pytest.raises(TransformError):
        Transform(name="list", build=lambda row: [1, 2]).apply({})
    with pytest.raises(TransformError):
        Transform(name="set", build=lambda row: {"tags": {"a"}}).apply({})


@pytest.mark.parametrize("price", ["nan", "inf", float("-inf"), float("nan")])
def test_non_finite_prices_are_rejected(price):
    with pytest.raises(TransformError) as excinfo:
        PRODUCT.apply(dict(ROW, list_price=price))
    assert "finite" in str(excinfo.value)


def test_non_finite_numbers_never_reach_a_document():
    with pytest.raises(TransformError):
        Transform(name="inf", build=lambda row: {"score": float("inf")}).apply({})
    with pytest.raises(TransformError):
        PASSTHROUGH.apply({"sku": "X", "weight": float("nan")})
    with pytest.raises(ValueError):
        canonical_bytes({"score": float("nan")})


def test_passthrough_drops_queue_keys_and_thaws_nested_values():
    document = PASSTHROUGH.apply({"document_id": "1", "sku": "X", "tags": ["a", "b"], "meta": {"k": 1}})

    assert document == {"sku": "X", "tags": ["a", "b"], "meta": {"k": 1}}


def test_registry_lookup():
    registry = default_registry()

    assert registry.names() == ("passthrough", "product")
    assert "product" in registry
    assert registry.get("product") is PRODUCT
    with pytest.raises(TransformError):
        registry.get("missing")
    with pytest.raises(ValueError):
        registry.register(PRODUCT)


def test_custom_registry():
    shout = Transform(name="shout", build=lambda row: {"name": row["name"].upper()}, required_fields=("name",))
    registry = TransformRegistry([shout])

    assert registry.get("shout").apply({"name": "bolt"}) == {"name": "BOLT"}
