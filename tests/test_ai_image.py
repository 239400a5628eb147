from __future__ import annotations

import base64
import json
from pathlib import Path

import httpx
import numpy as np
import pytest

from layerforge.ai_image import (
    AIImageAdapter,
    AIImageClient,
    AIImageError,
    AIImageJob,
    aspect_ratio,
    build_ai_client,
    build_prompt,
    get_graph,
)
from layerforge.project_schema import AIImageConfig
from layerforge.render_cache import BlobStore, RenderCache
from layerforge.surface import encode_png

ENDPOINT = "https://images.example.test/generate"


def _png_payload(width: int = 4, height: int = 4) -> str:
    surface = np.zeros((height, width, 4), dtype=np.float32)
    surface[..., 1] = 1.0
    surface[..., 3] = 1.0
    return "data:image/png;base64," + base64.b64encode(encode_png(surface)).decode("ascii")


class RecordingBackend:
    def __init__(self, *, status: int = 200, body: object | None = None) -> None:
        self.status = status
        self.body = body if body is not None else {"image": _png_payload()}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def _job(**overrides) -> AIImageJob:
    values = dict(graph="abstract_bg", params={"style": "abstract"}, seed=7, prompt="neon", width=4, height=4)
    values.update(overrides)
    return AIImageJob(**values)


def test_request_payload_and_auth_header() -> None:
    backend = RecordingBackend()
    client = AIImageClient(ENDPOINT, api_key="secret", transport=httpx.MockTransport(backend))

    result = client.generate(_job(width=16, height=9))

    assert result.cached is False
    assert result.image_bytes[:4] == b"\x89PNG"
    request = backend.requests[0]
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {"prompt": "neon", "seed": 7, "aspectRatio": "16:9"}


def test_identical_jobs_hit_backend_once() -> None:
    backend = RecordingBackend()
    client = AIImageClient(ENDPOINT, transport=httpx.MockTransport(backend))

    first = client.generate(_job())
    second = client.generate(_job())
    third = client.generate(_job(seed=8))

    assert (first.cached, second.cached, third.cached) == (False, True, False)
    assert first.content_hash == second.content_hash != third.content_hash
    assert len(backend.requests) == 2


def test_blob_store_survives_new_client(tmp_path: Path) -> None:
    backend = RecordingBackend()
    store = BlobStore(tmp_path / "ai-cache")
    AIImageClient(ENDPOINT, store=store, transport=httpx.MockTransport(backend)).generate(_job())

    fresh = AIImageClient(ENDPOINT, cache=RenderCache(), store=store, transport=httpx.MockTransport(backend))
    result = fresh.generate(_job())

    assert result.cached is True
    assert len(backend.requests) == 1


@pytest.mark.parametrize(
    "backend",
    [
        RecordingBackend(status=500, body={"error": "boom"}),
        RecordingBackend(body={"status": "queued"}),
        RecordingBackend(body={"image": "%%% not base64 %%%"}),
    ],
)
def test_backend_failures_raise(backend: RecordingBackend) -> None:
    client = AIImageClient(ENDPOINT, transport=httpx.MockTransport(backend))
    with pytest.raises(AIImageError):
        client.generate(_job())


def test_missing_endpoint_raises() -> None:
    with pytest.raises(AIImageError, match="endpoint"):
        AIImageClient(None).generate(_job())


def test_adapter_resizes_to_target() -> None:
    backend = RecordingBackend()
    adapter = AIImageAdapter(AIImageClient(ENDPOINT, transport=httpx.MockTransport(backend)))

    surface = adapter.render("portrait_nft", {}, 10, 6, 42, prompt="a fox")

    assert surface.shape == (6, 10, 4)
    np.testing.assert_allclose(surface[3, 5], [0, 1, 0, 1], atol=0.02)
    body = json.loads(backend.requests[0].content)
    assert body["prompt"].startswith("a fox, professional digital portrait")
    assert body["prompt"].endswith("ultra high resolution, highly detailed")


def test_prompt_and_aspect_helpers(caplog: pytest.LogCaptureFixture) -> None:
    graph = get_graph("texture_overlay")
    assert build_prompt(graph, "", {}) == graph.base_prompt
    assert build_prompt(graph, "moss", {"style": "ink"}) == f"moss, {graph.base_prompt}, ink style"

    with caplog.at_level("WARNING", logger="layerforge.ai_image"):
        assert get_graph("missing").id == "portrait_nft"
    assert "not found" in caplog.text

    assert aspect_ratio(512, 512) == "1:1"
    assert aspect_ratio(1920, 1080) == "16:9"
    assert aspect_ratio(1080, 1920) == "9:16"
    assert aspect_ratio(300, 100) == "1:1"


def test_build_ai_client_reads_key_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LF_TEST_KEY", "from-env")
    config = AIImageConfig(endpoint=ENDPOINT, api_key_env="LF_TEST_KEY", cache_dir=tmp_path)
    client = build_ai_client(config)
    assert client.api_key == "from-env"
    assert isinstance(client.store, BlobStore)
