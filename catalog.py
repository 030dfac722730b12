# catalog.py
"""JSON-file artwork catalog validated against ArtworkCatalog.schema.json."""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager, suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from jsonschema import ValidationError, validate as js_validate

try:
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - platform dependent
    fcntl = None  # type: ignore

from errors import ArtworkNotFound, CatalogReadError, InputValidationError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
SCHEMA_PATH = BASE_DIR / "ArtworkCatalog.schema.json"
DEFAULT_CATALOG_PATH = BASE_DIR / "catalog.json"

ARTWORK_TEXT_FIELDS = (
    "title",
    "author",
    "year",
    "movement",
    "technique",
    "dimensions",
    "location",
    "description",
    "image",
)
REQUIRED_ON_CREATE = ("title", "author", "image")


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON atomically with a unique temp file to avoid cross-process races."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(data, indent=2, ensure_ascii=False)
    fd = None
    tmp_name = None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = None
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
        if tmp_name and os.path.exists(tmp_name):
            with suppress(OSError):
                os.remove(tmp_name)


def load_schema(schema_path: Path = SCHEMA_PATH) -> Dict[str, Any]:
    try:
        return json.loads(schema_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unable to load schema at %s: %s", schema_path, exc)
        # Minimal fallback
        properties: Dict[str, Any] = {"id": {"type": "integer", "minimum": 1}}
        for name in ARTWORK_TEXT_FIELDS:
            properties[name] = {"type": "string", "default": ""}
        properties["title"]["minLength"] = 1
        return {
            "type": "object",
            "properties": properties,
            "required": ["id", *ARTWORK_TEXT_FIELDS],
            "additionalProperties": False,
        }


def apply_schema_defaults(data: Dict[str, Any], schema: Dict[str, Any]) -> Dict[str, Any]:
    """Fill missing keys from the schema and coerce legacy shapes in place."""
    if "location" not in data and "ubication" in data:
        data["location"] = data.pop("ubication")
    data.pop("ubication", None)
    props = schema.get("properties", {})
    for key, spec in props.items():
        if key in data and data[key] is not None:
            continue
        if "default" in spec:
            data[key] = spec["default"]
        elif spec.get("type") == "string":
            data[key] = ""
    for key in ARTWORK_TEXT_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            data[key] = str(value)
    if isinstance(data.get("id"), str):
        with suppress(ValueError):
            data["id"] = int(data["id"])
    for key in list(data.keys()):
        if key not in props:
            data.pop(key)
    return data


@dataclass
class Artwork:
    id: int
    title: str
    author: str = ""
    year: str = ""
    movement: str = ""
    technique: str = ""
    dimensions: str = ""
    location: str = ""
    description: str = ""
    image: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artwork":
        return cls(id=int(data["id"]), **{name: str(data.get(name) or "") for name in ARTWORK_TEXT_FIELDS})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clean_input(data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep known text fields that were actually provided (None means 'unchanged')."""
    values = dict(data or {})
    if values.get("location") is None and values.get("ubication") is not None:
        values["location"] = values["ubication"]
    clean: Dict[str, Any] = {}
    for name in ARTWORK_TEXT_FIELDS:
        value = values.get(name)
        if value is None:
            continue
        clean[name] = value.strip() if isinstance(value, str) else str(value)
    return clean


def _item_id(item: Any) -> int:
    if not isinstance(item, dict):
        return 0
    try:
        return int(item.get("id") or 0)
    except (TypeError, ValueError):
        return 0


class CatalogStore:
    """Catalog persisted as ``{"next_id": int, "artworks": [...]}``."""

    def __init__(self, path: Path = DEFAULT_CATALOG_PATH, schema_path: Path = SCHEMA_PATH) -> None:
        self.path = Path(path)
        self.schema = load_schema(schema_path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the in-process lock and an exclusive flock shared by all workers."""
        with self._lock:
            if fcntl is None:  # pragma: no cover - platform dependent
                logger.warning("fcntl not available; catalog writes are not coordinated across workers")
                yield
                return
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                with suppress(OSError):
                    fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def _read(self) -> Dict[str, Any]:
        """Load the catalog; a missing file is empty, an unreadable one is an error."""
        if not self.path.exists():
            return {"next_id": 1, "artworks": []}
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Catalog %s could not be read: %s", self.path, exc)
            raise CatalogReadError(message=f"{self.path.name}: {exc}") from exc
        if not isinstance(doc, dict):
            logger.error("Catalog %s does not hold a JSON object", self.path)
            raise CatalogReadError(message=f"{self.path.name} does not hold a JSON object")
        artworks = doc.get("artworks") or []
        if not isinstance(artworks, list):
            raise CatalogReadError(message=f"{self.path.name}: 'artworks' is not a list")
        artworks = list(artworks)
        highest = max((_item_id(item) for item in artworks), default=0)
        try:
            next_id = max(int(doc.get("next_id") or 1), highest + 1)
        except (TypeError, ValueError):
            next_id = highest + 1
        return {"next_id": next_id, "artworks": artworks}

    def _write(self, doc: Dict[str, Any]) -> None:
        atomic_write_json(self.path, doc)

    def _validated(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = apply_schema_defaults(record, self.schema)
        try:
            js_validate(instance=record, schema=self.schema)
        except ValidationError as exc:
            raise InputValidationError(message=exc.message, error="Invalid artwork") from exc
        return record

    def list_artworks(self) -> List[Artwork]:
        doc = self._read()
        artworks = [
            Artwork.from_dict(apply_schema_defaults(dict(item), self.schema))
            for item in doc["artworks"]
            if _item_id(item) > 0
        ]
        return sorted(artworks, key=lambda artwork: artwork.id)

    def get_artwork(self, artwork_id: int) -> Artwork:
        for item in self._read()["artworks"]:
            if _item_id(item) == artwork_id:
                return Artwork.from_dict(apply_schema_defaults(dict(item), self.schema))
        raise ArtworkNotFound()

    def create_artwork(self, data: Dict[str, Any]) -> Artwork:
        values = _clean_input(data)
        missing = [name for name in REQUIRED_ON_CREATE if not values.get(name)]
        if missing:
            raise InputValidationError(error="title, author and image are required", missing=missing)
        with self._locked():
            doc = self._read()
            record = self._validated({"id": doc["next_id"], **values})
            doc["artworks"].append(record)
            doc["next_id"] = record["id"] + 1
            self._write(doc)
        logger.info("Created artwork %d (%s)", record["id"], record["title"])
        return Artwork.from_dict(record)

    def update_artwork(self, artwork_id: int, data: Dict[str, Any]) -> Artwork:
        """Change only the fields present in ``data``; the rest keep their value."""
        values = _clean_input(data)
        with self._locked():
            doc = self._read()
            for index, item in enumerate(doc["artworks"]):
                if _item_id(item) != artwork_id:
                    continue
                record = self._validated({**apply_schema_defaults(dict(item), self.schema), **values})
                doc["artworks"][index] = record
                self._write(doc)
                logger.info("Updated artwork %d (fields: %s)", artwork_id, ", ".join(values) or "none")
                return Artwork.from_dict(record)
        raise ArtworkNotFound()

    def delete_artwork(self, artwork_id: int) -> None:
        with self._locked():
            doc = self._read()
            remaining = [item for item in doc["artworks"] if _item_id(item) != artwork_id]
            if len(remaining) == len(doc["artworks"]):
                raise ArtworkNotFound()
            doc["artworks"] = remaining
            self._write(doc)
        logger.info("Deleted artwork %d", artwork_id)

    def validate_and_migrate(self) -> Tuple[int, int, List[Tuple[Any, str]]]:
        """Apply schema defaults to every entry and rewrite the ones that changed.

        Entries that still fail validation are kept exactly as stored and
        reported as ``(id, message)`` pairs; nothing is ever dropped.
        Returns ``(total, changed, invalid)``.
        """
        with self._locked():
            doc = self._read()
            changed = 0
            invalid: List[Tuple[Any, str]] = []
            migrated: List[Dict[str, Any]] = []
            for item in doc["artworks"]:
                if not isinstance(item, dict):
                    logger.warning("Catalog entry %r is not an object, left unchanged", item)
                    invalid.append((None, "entry is not an object"))
                    migrated.append(item)
                    continue
                before = json.dumps(item, sort_keys=True)
                record = apply_schema_defaults(dict(item), self.schema)
                try:
                    js_validate(instance=record, schema=self.schema)
                except ValidationError as exc:
                    logger.warning("Artwork %s failed schema validation, left unchanged: %s", item.get("id"), exc.message)
                    invalid.append((item.get("id"), exc.message))
                    migrated.append(item)
                    continue
                if json.dumps(record, sort_keys=True) != before:
                    changed += 1
                migrated.append(record)
            if changed or not self.path.exists():
                doc["artworks"] = migrated
                self._write(doc)
        return len(migrated), changed, invalid

    def find_image_reference(self, artwork_id: int) -> Tuple[str, str, Optional[str]]:
        """Return ``(title, author, image_url)`` for the character analysis."""
        artwork = self.get_artwork(artwork_id)
        return artwork.title, artwork.author, artwork.image or None
