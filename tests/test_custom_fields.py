import pytest

from custom_fields import (
    FieldSpec,
    FieldValueError,
    load_schema,
    normalize_schema,
    sanitize_custom_fields,
)
from models import FieldType


def test_unknown_keys_are_dropped() -> None:
    specs = [FieldSpec(key="store", label="Store", type=FieldType.text)]

    clean = sanitize_custom_fields(specs, {"store": "Mart", "bogus": "x"})

    assert clean == {"store": "Mart"}


def test_values_are_coerced_to_declared_types() -> None:
    specs = [
        FieldSpec(key="liters", label="Liters", type=FieldType.number),
        FieldSpec(key="due", label="Due", type=FieldType.date),
        FieldSpec(key="paid", label="Paid", type=FieldType.boolean),
        FieldSpec(key="size", label="Size", type=FieldType.select, options=("S", "M")),
    ]

    clean = sanitize_custom_fields(
        specs,
        {"liters": "12.5", "due": "2024-03-01T10:00:00", "paid": "true", "size": "M"},
    )

    assert clean == {"liters": 12.5, "due": "2024-03-01", "paid": True, "size": "M"}


def test_blank_values_are_skipped() -> None:
    specs = [
        FieldSpec(key="store", label="Store"),
        FieldSpec(key="paid", label="Paid", type=FieldType.boolean),
    ]

    assert sanitize_custom_fields(specs, {"store": "  ", "paid": None}) == {}


def test_select_rejects_undeclared_option() -> None:
    specs = [FieldSpec(key="size", label="Size", type=FieldType.select, options=("S",))]

    with pytest.raises(FieldValueError) as excinfo:
        sanitize_custom_fields(specs, {"size": "XL"})
    assert excinfo.value.key == "size"


def test_number_rejects_text_and_booleans() -> None:
    spec = FieldSpec(key="liters", label="Liters", type=FieldType.number)

    with pytest.raises(FieldValueError):
        sanitize_custom_fields([spec], {"liters": "a lot"})
    with pytest.raises(FieldValueError):
        sanitize_custom_fields([spec], {"liters": True})


def test_normalize_schema_rules() -> None:
    specs = normalize_schema(
        [
            FieldSpec(key=" store ", label="", type=FieldType.text, options=("x",)),
            FieldSpec(key="size", label="Size", type=FieldType.select, options=("S", "S", " M ")),
        ]
    )

    assert specs[0] == FieldSpec(key="store", label="store", type=FieldType.text)
    assert specs[1].options == ("S", "M")

    with pytest.raises(FieldValueError):
        normalize_schema([FieldSpec(key="a", label="A"), FieldSpec(key="a", label="B")])
    with pytest.raises(FieldValueError):
        normalize_schema([FieldSpec(key="size", label="Size", type=FieldType.select)])


def test_load_schema_reads_stored_documents() -> None:
    specs = load_schema(
        [{"key": "size", "label": "Size", "type": "select", "options": ["S"]}]
    )

    assert specs == [
        FieldSpec(key="size", label="Size", type=FieldType.select, options=("S",))
    ]
