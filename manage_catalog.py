#!/usr/bin/env python3
"""
Catalog management CLI

Validates and migrates the artwork catalog against ArtworkCatalog.schema.json,
imports artworks from a JSON file, and runs one image through a running
server's recognition endpoint the way the upload page does. Safe to run
multiple times.

Usage:
  python manage_catalog.py validate
  python manage_catalog.py import artworks.json
  python manage_catalog.py recognize painting.jpg --url http://127.0.0.1:8000
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

import handoff
import image_prep
from catalog import DEFAULT_CATALOG_PATH, CatalogStore
from errors import ArtCatalogError, CatalogReadError
from normalizer import RecognitionResult


def _catalog(path: Optional[str]) -> CatalogStore:
    return CatalogStore(Path(path or os.getenv("CATALOG_PATH") or DEFAULT_CATALOG_PATH))


def validate_catalog(store: CatalogStore) -> int:
    try:
        total, changed, invalid = store.validate_and_migrate()
    except CatalogReadError as exc:
        print(f"[error] {exc.error}: {exc.message}")
        return 1
    for artwork_id, message in invalid:
        print(f"[warn] artwork {artwork_id} failed schema validation, left unchanged: {message}")
    print(f"Validated {total} artworks; updated {changed} entries; {len(invalid)} invalid.")
    return 0


def import_artworks(store: CatalogStore, source: Path) -> int:
    try:
        items = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"[error] Unable to read {source}: {exc}")
        return 1
    if isinstance(items, dict):
        items = items.get("artworks") or []
    if not isinstance(items, list):
        print(f"[error] {source} must hold a list of artworks")
        return 1

    created = 0
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            print(f"[warn] entry {index} is not an object, skipped")
            continue
        try:
            artwork = store.create_artwork(item)
        except ArtCatalogError as exc:
            print(f"[warn] entry {index} rejected: {exc.error} {exc.message or ''}".rstrip())
            continue
        created += 1
        print(f"  #{artwork.id} {artwork.title}")
    print(f"Imported {created} of {len(items)} artworks.")
    return 0


def _post_image(url: str, data: bytes, timeout: float) -> httpx.Response:
    files = {"image": ("upload.jpg", data, "image/jpeg")}
    return httpx.post(f"{url.rstrip('/')}/api/ai-recognition", files=files, timeout=timeout)


def recognize_image(image_path: Path, url: str, timeout: float, max_bytes: int) -> int:
    try:
        original = image_path.read_bytes()
    except OSError as exc:
        print(f"[error] Unable to read {image_path}: {exc}")
        return 1

    try:
        data = image_prep.compress_until_under(original, max_bytes)
    except ArtCatalogError as exc:
        print(f"[error] {exc.error}: {exc.message or ''}")
        return 1

    try:
        response = _post_image(url, data, timeout)
        if response.status_code == 413:
            # One retry with a tighter ceiling
            print(f"[warn] server rejected {len(data)} bytes; compressing harder")
            data = image_prep.compress_until_under(original, max_bytes // 2)
            response = _post_image(url, data, timeout)
    except httpx.HTTPError as exc:
        print(f"[error] request failed: {exc}")
        return 1

    try:
        body: Dict[str, Any] = response.json()
    except ValueError:
        body = {"error": response.text}
    if response.status_code != 200:
        print(f"[error] HTTP {response.status_code}: {body.get('error')}")
        for key in ("message", "suggestion"):
            if body.get(key):
                print(f"        {body[key]}")
        return 1

    store = handoff.SessionStore()
    result = RecognitionResult.from_payload(body, raw=body.get("raw"))
    if not handoff.write_handoff(store, result, image_prep.to_data_url(data, "image/jpeg")):
        print("[warn] session storage is full; the preview will have no image")
    record = handoff.read_preview_from_store(store)
    _print_preview(record)
    return 0


def _print_preview(record: Optional[handoff.PreviewRecord]) -> None:
    if record is None:
        print("No recognition result.")
        return
    result = record.result
    if not result.is_artwork:
        print("Not recognized as an artwork.")
    lines: List[str] = []
    for label, value in (
        ("Title", result.title),
        ("Author", result.author),
        ("Year", result.year),
        ("Movement", result.movement),
        ("Technique", result.technique),
        ("Dimensions", result.dimensions),
        ("Location", result.location),
    ):
        if value:
            lines.append(f"{label:<11} {value}")
    print("\n".join(lines))
    for paragraph in record.description_paragraphs:
        print()
        print(paragraph)


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Manage the artwork catalog and try AI recognition.")
    parser.add_argument("--catalog", help="Catalog JSON path (default: $CATALOG_PATH or ./catalog.json)")
    sub = parser.add_subparsers(dest="cmd", required=True)
    sub.add_parser("validate", help="Validate and migrate catalog entries")
    imp = sub.add_parser("import", help="Add artworks from a JSON list")
    imp.add_argument("source", type=Path)
    rec = sub.add_parser("recognize", help="Send an image to a running server and print the preview")
    rec.add_argument("image", type=Path)
    rec.add_argument("--url", default="http://127.0.0.1:8000")
    rec.add_argument("--timeout", type=float, default=90.0)
    rec.add_argument("--max-bytes", type=int, default=image_prep.CLIENT_MAX_BYTES)
    args = parser.parse_args(argv)

    if args.cmd == "validate":
        return validate_catalog(_catalog(args.catalog))
    if args.cmd == "import":
        return import_artworks(_catalog(args.catalog), args.source)
    if args.cmd == "recognize":
        return recognize_image(args.image, args.url, args.timeout, args.max_bytes)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
