import os
import tempfile

# Must be set before main is imported: logging is configured at import time
os.environ.setdefault("APP_FILE_LOG", "0")
os.environ.setdefault("APP_LOG_DIR", tempfile.mkdtemp(prefix="art-catalog-logs-"))

from io import BytesIO
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import main
from catalog import CatalogStore


class FakeVisionClient:
    """Records calls and answers with canned text instead of calling the model."""

    def __init__(self) -> None:
        self.text = ""
        self.error: Optional[Exception] = None
        self.calls: List[Tuple] = []

    async def recognize(self, image_data_url: str, max_tokens: int = 0) -> str:
        self.calls.append(("recognize", image_data_url, max_tokens))
        if self.error is not None:
            raise self.error
        return self.text

    async def analyze_characters(self, image_url: str, title: str, author: str, max_tokens: int = 0) -> str:
        self.calls.append(("analyze_characters", image_url, title, author, max_tokens))
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def make_image():
    def _make(fmt: str = "JPEG", size=(64, 48), noise: bool = False) -> bytes:
        if noise:
            img = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
        else:
            img = Image.new("RGB", size, (180, 40, 40))
        buffer = BytesIO()
        img.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make


@pytest.fixture
def catalog(tmp_path) -> CatalogStore:
    return CatalogStore(tmp_path / "catalog.json")


@pytest.fixture
def fake_vision() -> FakeVisionClient:
    return FakeVisionClient()


@pytest.fixture
def client(catalog, fake_vision, tmp_path, monkeypatch):
    monkeypatch.setattr(main, "CONFIG_PATH", tmp_path / "ai_config.json")
    monkeypatch.setattr(main, "AI_LOGS_DIR", tmp_path / "ai")
    monkeypatch.delenv("AI_DEBUG_DUMP", raising=False)
    main.app.dependency_overrides[main.get_catalog] = lambda: catalog
    main.app.dependency_overrides[main.get_vision_provider] = lambda: (lambda: fake_vision)
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
