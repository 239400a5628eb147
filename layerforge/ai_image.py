"""
Remote AI image generation for `sd:` trait sources.

Jobs are content addressed: the SHA-256 of the canonical job JSON keys both
the shared in-memory cache and the optional on-disk blob store, so identical
jobs hit the backend at most once.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
import logging
import os
import time
from typing import Any, Dict, Mapping, Optional

import httpx
import numpy as np
from PIL import Image

from .project_schema import AIImageConfig
from .render_cache import BlobStore, RenderCache, content_hash
from .surface import decode_image_bytes, from_pil, to_pil

LOG = logging.getLogger("layerforge.ai_image")


class AIImageError(RuntimeError):
    """Raised when the remote backend fails or returns an unusable payload."""


@dataclass(frozen=True)
class AIGraphSpec:
    id: str
    name: str
    category: str
    base_prompt: str
    params: Dict[str, Any] = field(default_factory=dict)


AI_GRAPH_PRESETS: Dict[str, AIGraphSpec] = {
    spec.id: spec
    for spec in (
        AIGraphSpec(
            id="portrait_nft",
            name="NFT Portrait",
            category="portrait",
            base_prompt="professional digital portrait, centered composition, clean background, high detail",
            params={"aspectRatio": "1:1", "quality": "high", "style": "digital art"},
        ),
        AIGraphSpec(
            id="abstract_bg",
            name="Abstract Background",
            category="background",
            base_prompt="abstract geometric pattern, vibrant colors, seamless texture",
            params={"aspectRatio": "1:1", "quality": "medium", "style": "abstract"},
        ),
        AIGraphSpec(
            id="accessory_item",
            name="Accessory Item",
            category="object",
            base_prompt="isolated object, transparent background, high detail, studio lighting",
            params={"aspectRatio": "1:1", "quality": "high", "style": "product photo"},
        ),
        AIGraphSpec(
            id="texture_overlay",
            name="Texture Overlay",
            category="abstract",
            base_prompt="seamless tileable texture, subtle pattern, neutral tones",
            params={"aspectRatio": "1:1", "quality": "medium", "style": "texture"},
        ),
    )
}
DEFAULT_GRAPH_ID = "portrait_nft"


def get_graph(graph_id: str) -> AIGraphSpec:
    spec = AI_GRAPH_PRESETS.get(graph_id)
    if spec is None:
        LOG.warning("AI graph '%s' not found; using '%s'.", graph_id, DEFAULT_GRAPH_ID)
        spec = AI_GRAPH_PRESETS[DEFAULT_GRAPH_ID]
    return spec


def build_prompt(graph: AIGraphSpec, custom_prompt: str, params: Mapping[str, Any]) -> str:
    prompt = graph.base_prompt
    if custom_prompt:
        prompt = f"{custom_prompt}, {prompt}"
    if params.get("style"):
        prompt = f"{prompt}, {params['style']} style"
    if graph.params.get("quality") == "high":
        prompt = f"{prompt}, ultra high resolution, highly detailed"
    return prompt


def aspect_ratio(width: int, height: int) -> str:
    ratio = width / height
    for label, target in (("1:1", 1.0), ("16:9", 16 / 9), ("9:16", 9 / 16)):
        if abs(ratio - target) < 0.1:
            return label
    return "1:1"


@dataclass(frozen=True)
class AIImageJob:
    graph: str
    params: Dict[str, Any]
    seed: int
    prompt: str
    width: int
    height: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "graph": self.graph,
            "params": dict(self.params),
            "seed": self.seed,
            "prompt": self.prompt,
            "outSize": {"w": self.width, "h": self.height},
        }

    @property
    def content_hash(self) -> str:
        return content_hash(self.to_dict())


@dataclass(frozen=True)
class AIImageResult:
    image_bytes: bytes
    content_hash: str
    cached: bool
    elapsed_ms: float


def _decode_payload(image: str) -> bytes:
    if image.startswith("data:"):
        _, _, image = image.partition(",")
    try:
        return base64.b64decode(image, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AIImageError(f"Backend returned invalid base64 image data: {exc}") from exc


class AIImageClient:
    """HTTP client for the image generation backend."""

    def __init__(
        self,
        endpoint: Optional[str],
        *,
        timeout: float = 60.0,
        api_key: Optional[str] = None,
        cache: Optional[RenderCache] = None,
        store: Optional[BlobStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.api_key = api_key
        self.cache = cache if cache is not None else RenderCache()
        self.store = store
        self.transport = transport

    def _request(self, job: AIImageJob) -> bytes:
        if not self.endpoint:
            raise AIImageError("No AI image endpoint configured (set ai_image.endpoint).")
        payload = {
            "prompt": job.prompt,
            "seed": job.seed,
            "aspectRatio": aspect_ratio(job.width, job.height),
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise AIImageError(f"AI image request failed: {exc}") from exc

        if response.status_code >= 400:
            LOG.error("AI image backend returned %d: %s", response.status_code, response.text[:200])
            raise AIImageError(f"AI image generation failed with status {response.status_code}.")
        try:
            body = response.json()
        except ValueError as exc:
            raise AIImageError("AI image backend returned a non-JSON response.") from exc
        image = body.get("image") if isinstance(body, dict) else None
        if not image or not isinstance(image, str):
            raise AIImageError("No image data returned from generation.")
        return _decode_payload(image)

    def generate(self, job: AIImageJob) -> AIImageResult:
        digest = job.content_hash
        started = time.perf_counter()
        fetched = False

        def _produce() -> bytes:
            nonlocal fetched
            if self.store is not None:
                stored = self.store.get(digest)
                if stored is not None:
                    return stored
            fetched = True
            data = self._request(job)
            if self.store is not None:
                self.store.put(digest, data)
            return data

        data, _ = self.cache.get_or_create(("sd", digest), _produce)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        LOG.debug("AI job %s resolved in %.1f ms (fetched=%s)", digest[:12], elapsed_ms, fetched)
        return AIImageResult(
            image_bytes=data,
            content_hash=digest,
            cached=not fetched,
            elapsed_ms=elapsed_ms,
        )


class AIImageAdapter:
    """Render `sd:` trait sources through an `AIImageClient`."""

    def __init__(self, client: AIImageClient) -> None:
        self.client = client

    def render(
        self,
        preset_id: str,
        params: Mapping[str, Any],
        width: int,
        height: int,
        seed: int,
        *,
        prompt: str = "",
    ) -> np.ndarray:
        graph = get_graph(preset_id)
        merged = {**graph.params, **params}
        job = AIImageJob(
            graph=graph.id,
            params=merged,
            seed=int(seed),
            prompt=build_prompt(graph, prompt, merged),
            width=int(width),
            height=int(height),
        )
        result = self.client.generate(job)
        surface = decode_image_bytes(result.image_bytes)
        if surface.shape[:2] != (int(height), int(width)):
            resized = to_pil(surface).resize((int(width), int(height)), Image.Resampling.LANCZOS)
            surface = from_pil(resized)
        return surface


def build_ai_client(config: AIImageConfig, cache: Optional[RenderCache] = None) -> AIImageClient:
    api_key = os.environ.get(config.api_key_env)
    store = BlobStore(config.cache_dir) if config.cache_dir else None
    return AIImageClient(
        config.endpoint,
        timeout=config.timeout,
        api_key=api_key,
        cache=cache,
        store=store,
    )


__all__ = [
    "AIGraphSpec",
    "AIImageAdapter",
    "AIImageClient",
    "AIImageError",
    "AIImageJob",
    "AIImageResult",
    "AI_GRAPH_PRESETS",
    "aspect_ratio",
    "build_ai_client",
    "build_prompt",
    "get_graph",
]
