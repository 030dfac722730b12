# handoff.py
"""Pass one recognition result from the upload page to the preview page.

The result travels through browser ``sessionStorage`` in two slots: the
normalized record as JSON and the source image as a data URL. The image is
kept apart because data URLs are large enough to threaten the storage quota
on their own. Both slots live as long as the browsing session.

The page scripts read the slot keys from the constants below, and the
preview page posts whatever it finds back to ``read_preview`` for rendering,
so writer and reader share one contract and one normalization routine.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, MutableMapping, Optional

from errors import StorageQuotaError
from normalizer import RecognitionResult, coerce_flag, normalize_recognition

logger = logging.getLogger(__name__)

HANDOFF_SCHEMA_VERSION = 1

# Browsers allow roughly 5 MiB per origin, counted in UTF-16 code units
DEFAULT_QUOTA_CHARS = 5 * 1024 * 1024

PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class HandoffSlot:
    key: str
    contents: str
    lifetime: str = "session"


RESULT_SLOT = HandoffSlot(
    key="ai:recognition:result",
    contents="JSON-serialized RecognitionResult with schema_version",
)
IMAGE_SLOT = HandoffSlot(
    key="ai:recognition:image",
    contents="source image as a data URL",
)


class SessionStore(MutableMapping[str, str]):
    """In-memory stand-in for ``sessionStorage`` with the same quota behavior."""

    def __init__(self, quota_chars: int = DEFAULT_QUOTA_CHARS) -> None:
        self.quota_chars = quota_chars
        self._data: Dict[str, str] = {}

    def usage(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def __setitem__(self, key: str, value: str) -> None:
        current = self._data.get(key)
        freed = len(key) + len(current) if current is not None else 0
        needed = self.usage() - freed + len(key) + len(value)
        if needed > self.quota_chars:
            raise StorageQuotaError(
                message=f"Writing {key!r} needs {needed} characters; quota is {self.quota_chars}",
            )
        self._data[key] = value

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


def serialize_result(result: RecognitionResult) -> str:
    payload = result.to_dict()
    payload["schema_version"] = HANDOFF_SCHEMA_VERSION
    return json.dumps(payload, ensure_ascii=False)


def write_handoff(
    store: MutableMapping[str, str],
    result: RecognitionResult,
    image_data_url: Optional[str],
) -> bool:
    """Write both slots independently; return False if either write failed.

    A quota failure is logged and swallowed so the caller can still navigate
    to the preview. A slot that could not be written is cleared, so the
    preview never pairs a fresh result with a stale image or the reverse.
    """
    complete = True
    for slot, value in ((RESULT_SLOT, serialize_result(result)), (IMAGE_SLOT, image_data_url)):
        if value is None:
            store.pop(slot.key, None)
            continue
        try:
            store[slot.key] = value
        except StorageQuotaError as exc:
            logger.warning("Could not save %s to session storage: %s", slot.key, exc.message)
            store.pop(slot.key, None)
            complete = False
    return complete


def is_displayable_image_source(value: Any) -> bool:
    """Accept data URLs and http(s) URLs; blob: URLs die with the page that made them."""
    if not isinstance(value, str):
        return False
    candidate = value.strip().lower()
    if candidate.startswith("blob:"):
        return False
    return candidate.startswith(("data:image/", "http://", "https://"))


def pick_image_source(image_slot: Optional[str], image_url: Optional[str]) -> Optional[str]:
    for candidate in (image_slot, image_url):
        if is_displayable_image_source(candidate):
            return candidate.strip()
    return None


@dataclass(frozen=True)
class PreviewRecord:
    result: RecognitionResult
    image_src: Optional[str] = None

    @property
    def description_paragraphs(self) -> List[str]:
        text = self.result.description or self.result.raw or ""
        return [part.strip() for part in PARAGRAPH_SPLIT_RE.split(text) if part.strip()]


def _load_result(result_text: str) -> RecognitionResult:
    try:
        payload = json.loads(result_text)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        # The slot holds model text rather than a serialized record
        return normalize_recognition(result_text)

    raw = payload.get("raw") if isinstance(payload.get("raw"), str) else None
    if raw is not None and not coerce_flag(payload.get("is_artwork")):
        return normalize_recognition(raw)
    if payload.get("schema_version") != HANDOFF_SCHEMA_VERSION:
        logger.info("Handoff payload schema version %r; normalizing as untrusted", payload.get("schema_version"))
    return RecognitionResult.from_payload(payload, raw=raw)


def read_preview(result_text: Optional[str], image_text: Optional[str]) -> Optional[PreviewRecord]:
    """Rebuild a displayable record from the two slots.

    None means nothing was stored yet, which the page shows as a guidance
    state rather than an error.
    """
    if not isinstance(result_text, str) or not result_text.strip():
        return None
    result = _load_result(result_text)
    return PreviewRecord(result=result, image_src=pick_image_source(image_text, result.image_url))


def read_preview_from_store(store: MutableMapping[str, str]) -> Optional[PreviewRecord]:
    return read_preview(store.get(RESULT_SLOT.key), store.get(IMAGE_SLOT.key))


def slot_keys() -> Dict[str, str]:
    """Slot keys handed to the page templates."""
    return {"result": RESULT_SLOT.key, "image": IMAGE_SLOT.key}
