import json

import pytest

import handoff
from errors import StorageQuotaError
from normalizer import RecognitionResult, normalize_recognition

DATA_URL = "data:image/jpeg;base64,/9j/4AAQ"


def _artwork(**fields):
    return RecognitionResult.from_payload({"is_artwork": True, **fields})


def test_slot_keys_are_distinct():
    keys = handoff.slot_keys()

    assert keys == {"result": "ai:recognition:result", "image": "ai:recognition:image"}
    assert handoff.RESULT_SLOT.lifetime == handoff.IMAGE_SLOT.lifetime == "session"


def test_round_trip_through_store():
    store = handoff.SessionStore()
    result = _artwork(title="The Kiss", author="Gustav Klimt", description="First.\n\nSecond.")

    assert handoff.write_handoff(store, result, DATA_URL) is True
    record = handoff.read_preview_from_store(store)

    assert record.result == result
    assert record.image_src == DATA_URL
    assert record.description_paragraphs == ["First.", "Second."]
    assert json.loads(store[handoff.RESULT_SLOT.key])["schema_version"] == handoff.HANDOFF_SCHEMA_VERSION


def test_quota_failure_clears_only_the_image_slot():
    store = handoff.SessionStore(quota_chars=2000)
    store[handoff.IMAGE_SLOT.key] = "data:image/jpeg;base64,stale"

    ok = handoff.write_handoff(store, _artwork(title="Small"), "data:image/jpeg;base64," + "A" * 5000)

    assert ok is False
    assert handoff.IMAGE_SLOT.key not in store
    assert handoff.read_preview_from_store(store).result.title == "Small"


def test_session_store_enforces_quota():
    store = handoff.SessionStore(quota_chars=10)

    with pytest.raises(StorageQuotaError):
        store["key"] = "value-too-long"
    assert len(store) == 0


def test_missing_result_means_empty_state():
    assert handoff.read_preview(None, DATA_URL) is None
    assert handoff.read_preview("  ", None) is None


def test_blob_urls_are_not_displayable():
    result = _artwork(title="Starry Night", image_url="https://example.org/starry.jpg")
    text = handoff.serialize_result(result)

    record = handoff.read_preview(text, "blob:https://example.org/1234")

    assert record.image_src == "https://example.org/starry.jpg"


def test_fallback_record_is_renormalized():
    stored = json.dumps({"is_artwork": False, "raw": 'noise {"is_artwork": true, "title": "Olympia"}'})

    record = handoff.read_preview(stored, None)

    assert record.result.is_artwork is True
    assert record.result.title == "Olympia"


def test_raw_text_slot_goes_through_normalizer():
    text = "```json\n{\"is_artwork\": true, \"title\": \"Las Meninas\"}\n```"

    assert handoff.read_preview(text, None).result == normalize_recognition(text)


def test_unparseable_raw_shows_raw_paragraphs():
    stored = json.dumps({"is_artwork": False, "raw": "first part\n\nsecond part"})

    record = handoff.read_preview(stored, None)

    assert record.result.is_fallback
    assert record.description_paragraphs == ["first part", "second part"]
