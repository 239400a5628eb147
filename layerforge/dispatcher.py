"""
Per-trait render dispatch.

`RenderDispatcher.render_trait` resolves a trait's source descriptor, routes
it to the adapter for its modality and memoises the surface in the shared
`RenderCache`. Adapters and the cache are injected so tests (and embedding
applications) control them explicitly.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
from pathlib import Path
import threading
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import numpy as np

from .ai_image import AIImageAdapter, build_ai_client
from .patterns import PatternAdapter
from .project_schema import ProjectConfig, Trait
from .render_cache import RenderCache, render_key
from .shaders import ShaderAdapter
from .sketches import SketchAdapter
from .sources import (
    AIImageSource,
    ImageSource,
    PatternSource,
    ShaderSource,
    SketchSource,
    SourceVariant,
    resolve,
)
from .surface import load_image_reference, place_unscaled

LOG = logging.getLogger("layerforge.dispatcher")


class RenderError(RuntimeError):
    """A single trait failed to render."""

    def __init__(self, trait_id: str, message: str) -> None:
        super().__init__(f"Trait '{trait_id}': {message}")
        self.trait_id = trait_id
        self.reason = message


@dataclass(frozen=True)
class RenderRequest:
    trait: Trait
    width: int
    height: int
    seed: str


RenderOutcome = Union[np.ndarray, RenderError]


class RenderDispatcher:
    """Route traits to modality adapters behind a shared cache."""

    def __init__(
        self,
        cache: RenderCache,
        adapters: Dict[str, Any],
        *,
        assets_root: Optional[Path] = None,
        render_workers: int = 4,
        image_timeout: float = 30.0,
        image_transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if render_workers <= 0:
            raise ValueError("render_workers must be > 0.")
        self.cache = cache
        self.adapters = dict(adapters)
        self.assets_root = Path(assets_root) if assets_root is not None else None
        self.render_workers = render_workers
        self.image_timeout = image_timeout
        self.image_transport = image_transport
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def __enter__(self) -> "RenderDispatcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.render_workers, thread_name_prefix="layerforge-render"
                )
            return self._pool

    # ------------------------------------------------------------------ #
    # Rendering
    # ------------------------------------------------------------------ #

    def render_trait(self, trait: Trait, width: int, height: int, seed: str) -> np.ndarray:
        """Render one trait to a read-only (height, width, 4) float32 surface."""
        key = render_key(trait.id, seed, width, height)
        surface, hit = self.cache.get_or_create(
            key, lambda: self._render_uncached(trait, int(width), int(height), seed)
        )
        if hit:
            LOG.debug("Render cache hit for %s", key)
        return surface

    def _render_uncached(self, trait: Trait, width: int, height: int, seed: str) -> np.ndarray:
        variant = resolve(trait.source)
        try:
            surface = self._dispatch(variant, width, height, seed)
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(trait.id, f"{variant.tag} render failed: {exc}") from exc

        surface = np.asarray(surface, dtype=np.float32)
        if surface.shape != (height, width, 4):
            raise RenderError(
                trait.id,
                f"{variant.tag} adapter returned shape {surface.shape}, expected {(height, width, 4)}.",
            )
        return surface

    def _adapter(self, tag: str) -> Any:
        try:
            return self.adapters[tag]
        except KeyError:
            raise LookupError(f"No adapter registered for '{tag}' sources.") from None

    def _dispatch(self, variant: SourceVariant, width: int, height: int, seed: str) -> np.ndarray:
        if isinstance(variant, ImageSource):
            if not variant.src:
                return np.zeros((height, width, 4), dtype=np.float32)
            image = load_image_reference(
                variant.src,
                assets_root=self.assets_root,
                timeout=self.image_timeout,
                transport=self.image_transport,
            )
            return place_unscaled(image, width, height)
        if isinstance(variant, (ShaderSource, SketchSource, PatternSource)):
            adapter = self._adapter(variant.tag)
            return adapter.render(variant.preset_id, variant.params, width, height, seed)
        if isinstance(variant, AIImageSource):
            adapter = self._adapter(variant.tag)
            return adapter.render(
                variant.graph_id, variant.params, width, height, variant.seed, prompt=variant.prompt
            )
        raise TypeError(f"Unsupported source variant {type(variant).__name__}.")

    def render_layers(
        self,
        requests: Sequence[RenderRequest],
        *,
        return_exceptions: bool = False,
    ) -> List[RenderOutcome]:
        """
        Render `requests` concurrently and wait for all of them.

        Results follow request order. With `return_exceptions` a failed trait
        yields its `RenderError` in place; otherwise the first failure (in
        request order) is raised once every render has finished.
        """
        if not requests:
            return []
        executor = self._executor()
        futures: List[Future] = [
            executor.submit(self.render_trait, req.trait, req.width, req.height, req.seed)
            for req in requests
        ]
        outcomes: List[RenderOutcome] = []
        for req, future in zip(requests, futures):
            try:
                outcomes.append(future.result())
            except RenderError as exc:
                outcomes.append(exc)
            except Exception as exc:
                outcomes.append(RenderError(req.trait.id, str(exc)))
        if not return_exceptions:
            for outcome in outcomes:
                if isinstance(outcome, RenderError):
                    raise outcome
        return outcomes


def default_adapters(project: ProjectConfig, cache: RenderCache) -> Dict[str, Any]:
    return {
        "webgl": ShaderAdapter(),
        "p5": SketchAdapter(),
        "strudel": PatternAdapter(),
        "sd": AIImageAdapter(build_ai_client(project.ai_image, cache)),
    }


def build_default_dispatcher(
    project: ProjectConfig, cache: Optional[RenderCache] = None
) -> RenderDispatcher:
    cache = cache if cache is not None else RenderCache()
    return RenderDispatcher(
        cache,
        default_adapters(project, cache),
        assets_root=project.assets_root,
        render_workers=project.export.render_workers,
    )


__all__ = [
    "RenderDispatcher",
    "RenderError",
    "RenderRequest",
    "build_default_dispatcher",
    "default_adapters",
]
