import json

from parsha_songs.services.reference import load_reference_catalog


def test_packaged_catalog_lists_all_parshiot_in_order() -> None:
    catalog = load_reference_catalog()
    parshiot = catalog.list_parshiot()

    assert len(parshiot) == 54
    assert parshiot[0].id == "bereshit"
    assert parshiot[-1].id == "vezot-haberachah"
    assert catalog.get_parasha("ki-tisa") is not None
    assert catalog.get_parasha("not-a-parasha") is None


def test_haftarah_membership_is_per_parasha() -> None:
    catalog = load_reference_catalog()

    assert catalog.has_haftarah("noach", "noach-haftarah") is True
    assert catalog.has_haftarah("noach", "bereshit-haftarah") is False
    assert catalog.has_haftarah("noach", None) is False
    assert catalog.has_haftarah("unknown", "noach-haftarah") is False


def test_catalog_loads_from_custom_path(tmp_path) -> None:
    path = tmp_path / "parshiot.json"
    path.write_text(
        json.dumps(
            {
                "parshiot": [
                    {"id": "second", "name_en": "Second", "order_index": 2},
                    {
                        "id": "first",
                        "name_en": "First",
                        "order_index": 1,
                        "haftarot": {"diaspora": [{"id": "first-haftarah", "name": "Isaiah 1"}]},
                    },
                ]
            }
        ),
        encoding="utf-8",
    )

    catalog = load_reference_catalog(str(path))

    assert [parasha.id for parasha in catalog.list_parshiot()] == ["first", "second"]
    assert catalog.has_haftarah("first", "first-haftarah") is True
