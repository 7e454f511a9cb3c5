import json
import struct

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from expanded_metadata.model_registry import DirectoryModelRegistry
from expanded_metadata.settings import Settings

TENSOR_PAYLOAD = bytes(range(32))


def write_safetensors(path, metadata=None, payload=TENSOR_PAYLOAD):
    header = {"weight": {"dtype": "F32", "shape": [len(payload) // 4], "data_offsets": [0, len(payload)]}}
    if metadata is not None:
        header["__metadata__"] = metadata
    raw = json.dumps(header).encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(struct.pack("<q", len(raw)) + raw + payload)
    return path


@pytest.fixture
def make_safetensors():
    return write_safetensors


@pytest.fixture
def models_root(tmp_path):
    root = tmp_path / "models"
    (root / "checkpoints").mkdir(parents=True)
    (root / "loras").mkdir()
    return root


@pytest.fixture
def registry(models_root):
    return DirectoryModelRegistry(str(models_root))


class FakeCivitai:
    """In-process stand-in for the CivitAI API and its media CDN."""

    def __init__(self):
        self.versions = {}
        self.models = {}
        self.media = {}
        self.calls = []
        self.server = None

    def build_app(self):
        app = web.Application()
        app.router.add_get("/api/v1/model-versions/by-hash/{hash}", self.by_hash)
        app.router.add_get("/api/v1/models/{model_id}", self.model)
        app.router.add_get("/media/{name}", self.media_file)
        return app

    async def by_hash(self, request):
        short = request.match_info["hash"]
        self.calls.append(("by-hash", short))
        if short not in self.versions:
            return web.json_response({"error": "Model not found"}, status=404)
        return web.json_response(self.versions[short])

    async def model(self, request):
        model_id = request.match_info["model_id"]
        self.calls.append(("model", model_id))
        if model_id not in self.models:
            return web.json_response({"error": "Not found"}, status=404)
        return web.json_response(self.models[model_id])

    async def media_file(self, request):
        name = request.match_info["name"]
        self.calls.append(("media", name))
        if name not in self.media:
            return web.Response(status=404)
        return web.Response(body=self.media[name])

    @property
    def base_url(self) -> str:
        return str(self.server.make_url("/api/v1"))

    def media_url(self, name: str) -> str:
        return str(self.server.make_url(f"/media/{name}"))

    def lookups(self):
        return [value for kind, value in self.calls if kind == "by-hash"]


@pytest_asyncio.fixture
async def civitai():
    fake = FakeCivitai()
    fake.server = TestServer(fake.build_app())
    await fake.server.start_server()
    try:
        yield fake
    finally:
        await fake.server.close()


@pytest.fixture
def settings_factory(tmp_path):
    def _build(base_url="http://127.0.0.1:1/api/v1", **overrides):
        values = {
            "root_dir": str(tmp_path / "expanded_metadata"),
            "civitai_base_url": base_url,
            "civitai_web_url": "https://civitai.com",
            "request_timeout": 5.0,
            "download_timeout": 5.0,
            "download_delay": 0.0,
        }
        values.update(overrides)
        return Settings(**values)

    return _build
