# normalizer.py
"""Turn loosely structured model text into recognition and character records.

The model is asked for a bare JSON object but regularly wraps it in a
Markdown fence or surrounds it with prose. Extraction runs in three explicit
stages and reports which one produced the object, or why none did:

1. ``strip_code_fence``: keep the inside of a ```json ... ``` block if present.
2. ``parse_direct``: parse the remaining text as a JSON object.
3. ``parse_embedded_object``: parse the greedy ``{ ... }`` span of the text.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from errors import MalformedResponseError

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
EMBEDDED_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

RECOGNITION_TEXT_FIELDS = (
    "title",
    "author",
    "year",
    "movement",
    "technique",
    "dimensions",
    "location",
    "description",
    "image_url",
)


class ExtractionFailure(str, Enum):
    EMPTY_INPUT = "empty_input"
    NO_OBJECT_FOUND = "no_object_found"
    INVALID_OBJECT = "invalid_object"


@dataclass(frozen=True)
class Extraction:
    text: str
    value: Optional[Dict[str, Any]] = None
    stage: Optional[str] = None
    failure: Optional[ExtractionFailure] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    match = FENCE_RE.search(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def parse_direct(text: str) -> Optional[Dict[str, Any]]:
    """Parse ``text`` as a whole; only a JSON object counts as success."""
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_embedded_object(text: str) -> Tuple[Optional[Dict[str, Any]], Optional[ExtractionFailure]]:
    """Parse the span from the first ``{`` to the last ``}``."""
    match = EMBEDDED_OBJECT_RE.search(text)
    if not match:
        return None, ExtractionFailure.NO_OBJECT_FOUND
    try:
        value = json.loads(match.group(0))
    except ValueError:
        return None, ExtractionFailure.INVALID_OBJECT
    if not isinstance(value, dict):
        return None, ExtractionFailure.INVALID_OBJECT
    return value, None


def extract_json_object(text: Optional[str]) -> Extraction:
    if text is None or not str(text).strip():
        return Extraction(text="", failure=ExtractionFailure.EMPTY_INPUT)
    cleaned = strip_code_fence(str(text))
    value = parse_direct(cleaned)
    if value is not None:
        return Extraction(text=cleaned, value=value, stage="direct")
    value, failure = parse_embedded_object(cleaned)
    if value is not None:
        return Extraction(text=cleaned, value=value, stage="embedded")
    return Extraction(text=cleaned, failure=failure)


def coerce_text(value: Any) -> Optional[str]:
    """Return a trimmed, non-empty string or None."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value).strip() or None


def coerce_flag(value: Any) -> bool:
    # Only a literal true or "true" counts; 1, "yes", "True" do not
    return value is True or value == "true"


# --- Recognition ---


@dataclass(frozen=True)
class RecognitionResult:
    is_artwork: bool = False
    title: Optional[str] = None
    author: Optional[str] = None
    year: Optional[str] = None
    movement: Optional[str] = None
    technique: Optional[str] = None
    dimensions: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    # Model text kept for debugging when no JSON object could be extracted
    raw: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], raw: Optional[str] = None) -> "RecognitionResult":
        """Normalize a parsed JSON object.

        A response that does not claim to be an artwork gets every other
        field cleared, even when the model filled them in anyway.
        """
        if not coerce_flag(payload.get("is_artwork")):
            return cls(is_artwork=False, raw=raw)
        fields = {name: coerce_text(payload.get(name)) for name in RECOGNITION_TEXT_FIELDS}
        return cls(is_artwork=True, raw=raw, **fields)

    @property
    def is_fallback(self) -> bool:
        return self.raw is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"is_artwork": self.is_artwork}
        for name in RECOGNITION_TEXT_FIELDS:
            data[name] = getattr(self, name)
        if self.raw is not None:
            data["raw"] = self.raw
        return data


def normalize_recognition(text: Optional[str]) -> RecognitionResult:
    """Never raises: unparseable text comes back as a raw-text fallback."""
    extraction = extract_json_object(text)
    if not extraction.ok:
        logger.warning(
            "Recognition response contained no JSON object (%s); returning raw text",
            extraction.failure.value if extraction.failure else "unknown",
        )
        return RecognitionResult(raw=text or "")
    logger.debug("Recognition JSON extracted via %s stage", extraction.stage)
    return RecognitionResult.from_payload(extraction.value)


# --- Character analysis ---

WORK_FIELDS = ("title", "author", "date", "location", "objective")

# attribute name -> key on the wire
FIGURE_FIELDS = (
    ("name", "nombre"),
    ("discipline", "disciplina"),
    ("position", "ubicacion"),
    ("visual_cue", "identificacion_visual"),
    ("meaning", "representa"),
    ("author_intent", "objetivo_del_autor"),
)


@dataclass(frozen=True)
class WorkSummary:
    title: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    location: Optional[str] = None
    objective: Optional[str] = None
    has_characters: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: getattr(self, name) for name in WORK_FIELDS}
        data["has_characters"] = self.has_characters
        return data


@dataclass(frozen=True)
class Figure:
    name: str
    discipline: Optional[str] = None
    position: Optional[str] = None
    visual_cue: Optional[str] = None
    meaning: Optional[str] = None
    author_intent: Optional[str] = None

    @classmethod
    def from_payload(cls, item: Any) -> Optional["Figure"]:
        """Return None for entries that are not objects or have no name."""
        if not isinstance(item, dict):
            return None
        name = item.get("nombre")
        if not isinstance(name, str) or not name.strip():
            return None
        values = {attr: coerce_text(item.get(key)) for attr, key in FIGURE_FIELDS[1:]}
        return cls(name=name.strip(), **values)

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in FIGURE_FIELDS}


@dataclass(frozen=True)
class CharacterAnalysis:
    work: WorkSummary
    figures: Tuple[Figure, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "obra": self.work.to_dict(),
            "personajes": [figure.to_dict() for figure in self.figures],
        }


def normalize_characters(text: Optional[str], title: Optional[str], author: Optional[str]) -> CharacterAnalysis:
    """Build a CharacterAnalysis or raise MalformedResponseError.

    ``title`` and ``author`` come from the catalog and stand in for the work
    summary when the model did not return a usable ``obra`` object.
    """
    extraction = extract_json_object(text)
    if not extraction.ok:
        failure = extraction.failure.value if extraction.failure else None
        raise MalformedResponseError(raw=text or "", failure=failure)
    payload = extraction.value

    raw_figures = payload.get("personajes")
    figures: List[Figure] = []
    if isinstance(raw_figures, list):
        for item in raw_figures:
            figure = Figure.from_payload(item)
            if figure is not None:
                figures.append(figure)
        dropped = len(raw_figures) - len(figures)
        if dropped:
            logger.debug("Dropped %d character entries without a name", dropped)

    raw_work = payload.get("obra")
    if isinstance(raw_work, dict):
        work_values = {name: coerce_text(raw_work.get(name)) for name in WORK_FIELDS}
        if "has_characters" in raw_work:
            has_characters = coerce_flag(raw_work.get("has_characters"))
        else:
            has_characters = bool(figures)
    else:
        work_values = {"title": coerce_text(title), "author": coerce_text(author)}
        has_characters = bool(figures)

    if not has_characters:
        figures = []
    return CharacterAnalysis(
        work=WorkSummary(has_characters=has_characters, **work_values),
        figures=tuple(figures),
    )
