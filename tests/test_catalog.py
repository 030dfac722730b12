import json
import threading

import pytest

from catalog import CatalogStore, apply_schema_defaults, load_schema
from errors import ArtworkNotFound, CatalogReadError, InputValidationError

STARRY = {
    "title": "The Starry Night",
    "author": "Vincent van Gogh",
    "year": 1889,
    "image": "https://img.example/starry.jpg",
}


def test_create_assigns_ids_and_defaults(catalog):
    first = catalog.create_artwork(STARRY)
    second = catalog.create_artwork({**STARRY, "title": "Irises"})

    assert (first.id, second.id) == (1, 2)
    assert first.year == "1889"
    assert first.movement == ""
    assert [a.title for a in catalog.list_artworks()] == ["The Starry Night", "Irises"]


def test_create_requires_title_author_image(catalog):
    with pytest.raises(InputValidationError) as excinfo:
        catalog.create_artwork({"title": "Untitled"})

    assert excinfo.value.extra["missing"] == ["author", "image"]


def test_ubication_is_an_alias_for_location(catalog):
    artwork = catalog.create_artwork({**STARRY, "ubication": "MoMA, New York"})

    assert artwork.location == "MoMA, New York"


def test_update_changes_only_given_fields(catalog):
    artwork = catalog.create_artwork(STARRY)

    updated = catalog.update_artwork(artwork.id, {"movement": "Post-Impressionism", "author": None})

    assert updated.movement == "Post-Impressionism"
    assert updated.author == "Vincent van Gogh"


def test_update_cannot_blank_the_title(catalog):
    artwork = catalog.create_artwork(STARRY)

    with pytest.raises(InputValidationError):
        catalog.update_artwork(artwork.id, {"title": "  "})


def test_delete_and_missing_ids(catalog):
    artwork = catalog.create_artwork(STARRY)

    catalog.delete_artwork(artwork.id)

    with pytest.raises(ArtworkNotFound):
        catalog.get_artwork(artwork.id)
    with pytest.raises(ArtworkNotFound):
        catalog.delete_artwork(artwork.id)
    with pytest.raises(ArtworkNotFound):
        catalog.update_artwork(99, {"title": "x"})


def test_ids_are_not_reused_after_delete(catalog):
    catalog.create_artwork(STARRY)
    second = catalog.create_artwork(STARRY)
    catalog.delete_artwork(second.id)

    assert catalog.create_artwork(STARRY).id == 3


def test_find_image_reference(catalog):
    artwork = catalog.create_artwork(STARRY)

    assert catalog.find_image_reference(artwork.id) == (
        "The Starry Night",
        "Vincent van Gogh",
        "https://img.example/starry.jpg",
    )


def test_validate_and_migrate_keeps_invalid_entries(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps(
            {
                "artworks": [
                    {"id": 1, "title": "", "description": "Needs a title"},
                    {"id": 2, "title": "Olympia", "ubication": "Musée d'Orsay", "extra": "x"},
                ]
            }
        ),
        encoding="utf-8",
    )
    store = CatalogStore(path)

    total, changed, invalid = store.validate_and_migrate()

    assert (total, changed) == (2, 1)
    assert [artwork_id for artwork_id, _ in invalid] == [1]
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert [item["id"] for item in saved["artworks"]] == [1, 2]
    assert saved["artworks"][0] == {"id": 1, "title": "", "description": "Needs a title"}
    assert saved["artworks"][1]["location"] == "Musée d'Orsay"
    assert "extra" not in saved["artworks"][1]


def test_unreadable_file_is_never_overwritten(catalog):
    catalog.create_artwork(STARRY)
    catalog.create_artwork({**STARRY, "title": "Irises"})
    damaged = catalog.path.read_text(encoding="utf-8")[:-3]
    catalog.path.write_text(damaged, encoding="utf-8")

    with pytest.raises(CatalogReadError):
        catalog.list_artworks()
    with pytest.raises(CatalogReadError):
        catalog.create_artwork({**STARRY, "title": "New"})
    with pytest.raises(CatalogReadError):
        catalog.validate_and_migrate()

    assert catalog.path.read_text(encoding="utf-8") == damaged


def test_non_object_document_is_an_error(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(CatalogReadError) as excinfo:
        CatalogStore(path).create_artwork(STARRY)

    assert excinfo.value.status_code == 500
    assert path.read_text(encoding="utf-8") == "[1, 2]"


def test_stores_sharing_a_file_do_not_lose_writes(tmp_path):
    path = tmp_path / "catalog.json"
    stores = [CatalogStore(path), CatalogStore(path)]

    def create_many(store):
        for index in range(20):
            store.create_artwork({**STARRY, "title": f"Study {index}"})

    threads = [threading.Thread(target=create_many, args=(store,)) for store in stores]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    ids = [artwork.id for artwork in CatalogStore(path).list_artworks()]
    assert len(ids) == 40
    assert sorted(ids) == list(range(1, 41))


def test_apply_schema_defaults_coerces_string_ids():
    record = apply_schema_defaults({"id": "7", "title": "Judith"}, load_schema())

    assert record["id"] == 7
    assert record["description"] == ""
