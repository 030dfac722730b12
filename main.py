# main.py
import os
import json
import time
import threading
from contextlib import suppress
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from fastapi.responses import HTMLResponse, JSONResponse
from starlette import status
from starlette.concurrency import run_in_threadpool
import logging

import handoff
import image_prep
from catalog import DEFAULT_CATALOG_PATH, CatalogStore, atomic_write_json
from errors import (
    ArtCatalogError,
    ArtworkHasNoImage,
    ArtworkNotFound,
    ConfigurationError,
    InputValidationError,
    MalformedResponseError,
    MissingImage,
    PayloadTooLarge,
    UnsupportedMediaType,
    UpstreamError,
)
from normalizer import normalize_characters, normalize_recognition
from vision import (
    CHARACTERS_MAX_TOKENS,
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_TIMEOUT_SECONDS,
    RECOGNITION_MAX_TOKENS,
    VisionClient,
)

# --- Configuration ---
BASE_DIR = Path(__file__).resolve().parent
# Static files are served from the URL path `/static`; the folder on disk is
# named with a capital "S".
STATIC_DIR = BASE_DIR / "Static"
TEMPLATES_DIR = BASE_DIR / "templates"
CONFIG_PATH = BASE_DIR / "ai_config.json"
LOGS_DIR = Path(os.getenv("APP_LOG_DIR", str(BASE_DIR / "logs")))
AI_LOGS_DIR = LOGS_DIR / "ai"

OPENAI_API_KEY_ENV_PRIMARY = "OPENAI_API_KEY"
OPENAI_API_KEY_ENV_LEGACY = "MY_OPENAI_API_KEY"
OPENAI_MODEL_ENV = "OPENAI_MODEL"

STATIC_DIR.mkdir(parents=True, exist_ok=True)
TEMPLATES_DIR.mkdir(parents=True, exist_ok=True)


def _configure_logging() -> logging.Logger:
    """Configure console + rotating file logging with env-driven levels.

    Env vars:
    - APP_LOG_LEVEL: console log level (default INFO)
    - APP_FILE_LOG: enable file logging to logs/app.log (default 1/true)
    - APP_FILE_LOG_LEVEL: file log level (default INFO)
    - APP_LOG_DIR: directory for app.log and AI debug dumps (default ./logs)
    """
    logger = logging.getLogger()
    if getattr(logger, "_app_logging_configured", False):
        return logging.getLogger(__name__)

    level_name = os.getenv("APP_LOG_LEVEL", "INFO").upper()
    file_level_name = os.getenv("APP_FILE_LOG_LEVEL", level_name).upper()
    level = getattr(logging, level_name, logging.INFO)
    file_level = getattr(logging, file_level_name, level)

    logger.setLevel(min(level, file_level))

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler (always on)
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    # Optional rotating file handler
    file_log_enabled = os.getenv("APP_FILE_LOG", "1").lower() in {"1", "true", "yes"}
    if file_log_enabled:
        from logging.handlers import RotatingFileHandler

        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(str(LOGS_DIR / "app.log"), maxBytes=5 * 1024 * 1024, backupCount=3)
        fh.setLevel(file_level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    setattr(logger, "_app_logging_configured", True)
    return logging.getLogger(__name__)


logger = _configure_logging()

# --- FastAPI App Setup ---
app = FastAPI(title="Art Catalog")

app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
templates = Jinja2Templates(directory=TEMPLATES_DIR)

config_lock = threading.Lock()


def _parse_bool_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "y", "on"}:
        return True
    if candidate in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_float_env(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_int_env(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _default_ai_config_from_env() -> Dict[str, Any]:
    return {
        "model": os.getenv(OPENAI_MODEL_ENV, DEFAULT_MODEL).strip() or DEFAULT_MODEL,
        "base_url": os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL).strip() or DEFAULT_BASE_URL,
        "timeout_seconds": max(5.0, _parse_float_env(os.getenv("OPENAI_TIMEOUT_SECONDS"), DEFAULT_TIMEOUT_SECONDS)),
        "recognition_max_tokens": _parse_int_env(os.getenv("AI_RECOGNITION_MAX_TOKENS"), RECOGNITION_MAX_TOKENS),
        "characters_max_tokens": _parse_int_env(os.getenv("AI_CHARACTERS_MAX_TOKENS"), CHARACTERS_MAX_TOKENS),
        "debug_dump": _parse_bool_env(os.getenv("AI_DEBUG_DUMP"), False),
    }


def _sanitize_ai_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(_default_ai_config_from_env())
    if not isinstance(cfg, dict):
        return out
    if isinstance(cfg.get("model"), str) and cfg["model"].strip():
        out["model"] = cfg["model"].strip()
    base_url = cfg.get("base_url")
    if isinstance(base_url, str) and base_url.strip().startswith(("http://", "https://")):
        out["base_url"] = base_url.strip()
    try:
        t = float(cfg.get("timeout_seconds", out["timeout_seconds"]))
        out["timeout_seconds"] = max(5.0, min(600.0, t))
    except (TypeError, ValueError):
        pass
    for key in ("recognition_max_tokens", "characters_max_tokens"):
        try:
            tok = int(cfg.get(key, out[key]))
            out[key] = max(16, min(16000, tok))
        except (TypeError, ValueError):
            pass
    if "debug_dump" in cfg:
        out["debug_dump"] = bool(cfg.get("debug_dump"))
    return out


def _load_ai_config() -> Dict[str, Any]:
    base = _default_ai_config_from_env()
    if CONFIG_PATH.exists():
        with suppress(json.JSONDecodeError, OSError):
            persisted = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
            return _sanitize_ai_config({**base, **(persisted or {})})
    return base


def _save_ai_config(cfg: Dict[str, Any]) -> None:
    with config_lock:
        atomic_write_json(CONFIG_PATH, _sanitize_ai_config(cfg))


def _get_ai_config() -> Dict[str, Any]:
    """Return runtime AI config from app.state with env fallbacks."""
    cfg = getattr(app.state, "ai_config", None)
    if not isinstance(cfg, dict):
        return _default_ai_config_from_env()
    return _sanitize_ai_config(cfg)


def _get_openai_api_key() -> Optional[str]:
    """Return the API key from `OPENAI_API_KEY`, then legacy `MY_OPENAI_API_KEY`."""
    api_key = os.getenv(OPENAI_API_KEY_ENV_PRIMARY) or os.getenv(OPENAI_API_KEY_ENV_LEGACY)
    if api_key and api_key.strip():
        return api_key.strip()
    return None


def _is_debug_dump_enabled() -> bool:
    # env override still works
    env = os.getenv("AI_DEBUG_DUMP", "").strip().lower()
    if env in {"1", "true", "yes"}:
        return True
    return bool(_get_ai_config().get("debug_dump", False))


def _dump_ai_debug(kind: str, reason: str, text: str, extra: Optional[Dict[str, Any]] = None) -> None:
    """Write a diagnostic file when parsing fails or when debug dumps are on."""
    try:
        # parse failures are always dumped
        if reason == "success" and not _is_debug_dump_enabled():
            return
        AI_LOGS_DIR.mkdir(parents=True, exist_ok=True)
        ts = time.strftime("%Y%m%d-%H%M%S")
        out_path = AI_LOGS_DIR / f"{kind}_{ts}_{reason}.json"
        doc = {
            "kind": kind,
            "reason": reason,
            "model": _get_ai_config().get("model"),
            "text_length": len(text or ""),
            "text_excerpt": (text or "")[:500],
        }
        if extra:
            doc.update(extra)
        out_path.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as dump_exc:
        logger.debug("Failed to write AI debug dump: %s", dump_exc)


# --- Dependencies ---


@lru_cache(maxsize=1)
def get_catalog() -> CatalogStore:
    return CatalogStore(Path(os.getenv("CATALOG_PATH") or DEFAULT_CATALOG_PATH))


def _build_vision_client() -> VisionClient:
    """Build a model client from the current config; fails when no key is set."""
    api_key = _get_openai_api_key()
    if not api_key:
        raise ConfigurationError(
            message=(
                f"Set env '{OPENAI_API_KEY_ENV_PRIMARY}' "
                f"(or legacy '{OPENAI_API_KEY_ENV_LEGACY}') to enable AI recognition."
            ),
        )
    cfg = _get_ai_config()
    return VisionClient(
        api_key=api_key,
        model=cfg["model"],
        base_url=cfg["base_url"],
        timeout_seconds=cfg["timeout_seconds"],
    )


def get_vision_provider() -> Callable[[], VisionClient]:
    # Resolved lazily so input validation runs before the configuration check
    return _build_vision_client


def _parse_artwork_id(raw: str) -> int:
    try:
        artwork_id = int(raw)
    except (TypeError, ValueError):
        raise InputValidationError(error="Invalid artwork ID")
    if artwork_id < 1:
        raise InputValidationError(error="Invalid artwork ID")
    return artwork_id


async def _read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        body = {}
    return body if isinstance(body, dict) else {}


@app.exception_handler(ArtCatalogError)
async def art_catalog_error_handler(request: Request, exc: ArtCatalogError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@app.on_event("startup")
async def startup_event() -> None:
    app.state.ai_config = _load_ai_config()
    if not _get_openai_api_key():
        logger.warning("No OpenAI API key configured; AI recognition requests will fail with 500")
    logger.info("Using model %s with a %.0fs timeout", app.state.ai_config["model"], app.state.ai_config["timeout_seconds"])


# --- AI routes ---


@app.post("/api/ai-recognition", response_class=JSONResponse)
async def ai_recognition(
    image: Optional[UploadFile] = File(None),
    file: Optional[UploadFile] = File(None),
    vision_provider: Callable[[], VisionClient] = Depends(get_vision_provider),
) -> JSONResponse:
    """Identify the artwork in an uploaded image.

    Order matters: media type, then size, then configuration, and only then
    the server-side resize and the model call.
    """
    upload = image or file
    if upload is None:
        raise MissingImage(suggestion="Attach the photo as multipart form field 'image'.")
    try:
        data = await upload.read()
    finally:
        await upload.close()

    mime_type = image_prep.resolve_mime_type(data, upload.content_type)
    if mime_type not in image_prep.ALLOWED_MIME_TYPES:
        raise UnsupportedMediaType(suggestion="Convert the photo to JPG or PNG and try again.")
    if len(data) > image_prep.UPLOAD_MAX_BYTES:
        raise PayloadTooLarge(
            message=f"Image is {len(data)} bytes; the limit is {image_prep.UPLOAD_MAX_BYTES} bytes.",
            suggestion="Compress the image before uploading (smaller dimensions or lower JPEG quality).",
            size_bytes=len(data),
            max_bytes=image_prep.UPLOAD_MAX_BYTES,
        )

    client = vision_provider()
    cfg = _get_ai_config()
    payload, payload_mime = await run_in_threadpool(image_prep.shrink_for_model, data, mime_type)
    logger.info(
        "AI recognition starting (%s, %d bytes uploaded, %d bytes sent)",
        mime_type,
        len(data),
        len(payload),
    )
    text = await client.recognize(
        image_prep.to_data_url(payload, payload_mime),
        max_tokens=cfg["recognition_max_tokens"],
    )

    result = normalize_recognition(text)
    if result.is_fallback:
        _dump_ai_debug("recognition", "error_parse", text)
    else:
        _dump_ai_debug("recognition", "success", text, {"is_artwork": result.is_artwork})
        logger.info(
            "AI recognition finished (is_artwork=%s, title=%s)",
            result.is_artwork,
            result.title or "-",
        )
    return JSONResponse(result.to_dict())


@app.post("/api/artworks/{artwork_id}/analyze-characters", response_class=JSONResponse)
async def analyze_characters(
    artwork_id: str,
    catalog: CatalogStore = Depends(get_catalog),
    vision_provider: Callable[[], VisionClient] = Depends(get_vision_provider),
) -> JSONResponse:
    """Ask the model which figures are depicted in a catalog artwork."""
    artwork_key = _parse_artwork_id(artwork_id)
    client = vision_provider()
    title, author, image_url = catalog.find_image_reference(artwork_key)
    if not image_url:
        raise ArtworkHasNoImage()

    cfg = _get_ai_config()
    try:
        text = await client.analyze_characters(
            image_url,
            title or "Unknown artwork",
            author or "Unknown author",
            max_tokens=cfg["characters_max_tokens"],
        )
    except UpstreamError as exc:
        raise UpstreamError(error="Character analysis failed", message=exc.message) from exc

    try:
        analysis = normalize_characters(text, title, author)
    except MalformedResponseError as exc:
        logger.warning("Character analysis for artwork %d returned no JSON (%s)", artwork_key, exc.failure)
        _dump_ai_debug("characters", "error_parse", text, {"artwork_id": artwork_key})
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    _dump_ai_debug("characters", "success", text, {"artwork_id": artwork_key})
    logger.info("Character analysis for artwork %d found %d figures", artwork_key, len(analysis.figures))
    return JSONResponse(analysis.to_dict())


# --- Catalog API ---


@app.get("/api/artworks", response_class=JSONResponse)
async def list_artworks(catalog: CatalogStore = Depends(get_catalog)) -> JSONResponse:
    return JSONResponse([artwork.to_dict() for artwork in catalog.list_artworks()])


@app.post("/api/artworks", response_class=JSONResponse)
async def create_artwork(request: Request, catalog: CatalogStore = Depends(get_catalog)) -> JSONResponse:
    body = await _read_json_body(request)
    artwork = catalog.create_artwork(body)
    return JSONResponse(artwork.to_dict(), status_code=status.HTTP_201_CREATED)


@app.get("/api/artworks/{artwork_id}", response_class=JSONResponse)
async def get_artwork(artwork_id: str, catalog: CatalogStore = Depends(get_catalog)) -> JSONResponse:
    return JSONResponse(catalog.get_artwork(_parse_artwork_id(artwork_id)).to_dict())


@app.api_route("/api/artworks/{artwork_id}", methods=["PUT", "PATCH"], response_class=JSONResponse)
async def update_artwork(
    artwork_id: str,
    request: Request,
    catalog: CatalogStore = Depends(get_catalog),
) -> JSONResponse:
    artwork_key = _parse_artwork_id(artwork_id)
    body = await _read_json_body(request)
    return JSONResponse(catalog.update_artwork(artwork_key, body).to_dict())


@app.delete("/api/artworks/{artwork_id}", response_class=JSONResponse)
async def delete_artwork(artwork_id: str, catalog: CatalogStore = Depends(get_catalog)) -> JSONResponse:
    catalog.delete_artwork(_parse_artwork_id(artwork_id))
    return JSONResponse({"success": True})


# --- Admin config ---


def _config_view() -> Dict[str, Any]:
    return {
        "ai": _get_ai_config(),
        "api_key_configured": _get_openai_api_key() is not None,
        "limits": {
            "allowed_mime_types": list(image_prep.ALLOWED_MIME_TYPES),
            "upload_max_bytes": image_prep.UPLOAD_MAX_BYTES,
            "model_input_max_bytes": image_prep.MODEL_INPUT_MAX_BYTES,
            "client_max_bytes": image_prep.CLIENT_MAX_BYTES,
        },
    }


@app.get("/admin/config", response_class=JSONResponse)
async def get_admin_config() -> JSONResponse:
    return JSONResponse(_config_view())


@app.post("/admin/config", response_class=JSONResponse)
async def update_admin_config(request: Request) -> JSONResponse:
    body = await _read_json_body(request)
    ai = body.get("ai", body)
    cfg = _sanitize_ai_config({**_get_ai_config(), **(ai if isinstance(ai, dict) else {})})
    request.app.state.ai_config = cfg
    _save_ai_config(cfg)
    return JSONResponse({**_config_view(), "message": "Configuration updated and saved"})


@app.post("/admin/config/reset", response_class=JSONResponse)
async def reset_admin_config(request: Request) -> JSONResponse:
    cfg = _default_ai_config_from_env()
    request.app.state.ai_config = cfg
    _save_ai_config(cfg)
    return JSONResponse({**_config_view(), "message": "Configuration reset to defaults"})


# --- Pages ---


def _page_context() -> Dict[str, Any]:
    return {
        "slot_keys": handoff.slot_keys(),
        "handoff_schema_version": handoff.HANDOFF_SCHEMA_VERSION,
    }


@app.get("/ai-recognition", response_class=HTMLResponse)
async def ai_recognition_page(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "ai_recognition.html",
        {
            **_page_context(),
            "allowed_mime_types": list(image_prep.ALLOWED_MIME_TYPES),
            "compress": {
                "max_bytes": image_prep.CLIENT_MAX_BYTES,
                "rounds": image_prep.COMPRESS_ROUNDS,
                "start_size": image_prep.COMPRESS_START_SIZE,
                "start_quality": image_prep.COMPRESS_START_QUALITY,
                "quality_step": image_prep.COMPRESS_QUALITY_STEP,
                "min_quality": image_prep.COMPRESS_MIN_QUALITY,
                "min_size": image_prep.COMPRESS_MIN_SIZE,
                "thumb_size": image_prep.THUMBNAIL_SIZE,
                "thumb_quality": image_prep.THUMBNAIL_QUALITY,
            },
        },
    )


@app.get("/artwork/preview", response_class=HTMLResponse)
async def artwork_preview_page(request: Request) -> HTMLResponse:
    """Shell page; its script posts the session slots to the render endpoint."""
    return templates.TemplateResponse(request, "artwork_preview.html", _page_context())


@app.post("/artwork/preview/render", response_class=HTMLResponse)
async def render_artwork_preview(request: Request) -> HTMLResponse:
    body = await _read_json_body(request)
    record = handoff.read_preview(body.get("result"), body.get("image"))
    if record is None:
        logger.debug("Preview requested with no stored recognition result")
    return templates.TemplateResponse(request, "_preview_panel.html", {"record": record})


@app.get("/artwork/{artwork_id}", response_class=HTMLResponse)
async def artwork_detail(
    request: Request,
    artwork_id: str,
    catalog: CatalogStore = Depends(get_catalog),
) -> HTMLResponse:
    """
    Displays the details of a single piece of artwork.
    """
    try:
        artwork = catalog.get_artwork(_parse_artwork_id(artwork_id))
    except (ArtworkNotFound, InputValidationError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artwork not found")
    paragraphs = [p.strip() for p in artwork.description.split("\n\n") if p.strip()]
    return templates.TemplateResponse(
        request,
        "artwork_detail.html",
        {"artwork": artwork, "paragraphs": paragraphs},
    )


@app.get("/", response_class=HTMLResponse)
async def read_root(request: Request, catalog: CatalogStore = Depends(get_catalog)):
    """
    Handles requests to the root URL ('/').
    Lists the catalog and renders the gallery template.
    """
    artworks = catalog.list_artworks()
    logger.debug("Rendering gallery with %d artworks", len(artworks))
    return templates.TemplateResponse(
        request,
        "index.html",
        {"artworks": artworks, "gallery_title": "Art Catalog"},
    )

# --- Running the App ---
# Development:  uvicorn main:app --reload
# Production:   gunicorn main:app --config gunicorn.conf.py
