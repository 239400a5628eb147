from __future__ import annotations

from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import pytest

from layerforge.project_schema import (
    ExportConfig,
    ProjectConfig,
    Rule,
    Trait,
    TraitClass,
)


class SolidAdapter:
    """Fill the whole surface with the grey `level` and `alpha` params."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, int, int, str]] = []

    def render(self, preset_id, params, width, height, seed):
        self.calls.append((preset_id, width, height, seed))
        level = float(params.get("level", 0.5))
        surface = np.zeros((height, width, 4), dtype=np.float32)
        surface[..., :3] = level
        surface[..., 3] = float(params.get("alpha", 1.0))
        return surface


@pytest.fixture
def solid_adapter() -> SolidAdapter:
    return SolidAdapter()


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., ProjectConfig]:
    def _factory(
        classes: Sequence[TraitClass],
        *,
        rules: Sequence[Rule] = (),
        seed: str = "base",
        collection_size: int = 3,
        width: int = 16,
        height: int = 16,
        batch_size: int = 8,
        **export_kwargs,
    ) -> ProjectConfig:
        project = ProjectConfig(
            name="Test Collection",
            seed=seed,
            collection_size=collection_size,
            classes=list(classes),
            rules=list(rules),
            export=ExportConfig(
                width=width,
                height=height,
                batch_size=batch_size,
                render_workers=2,
                output=tmp_path / "out" / "collection.zip",
                **export_kwargs,
            ),
            assets_root=tmp_path,
        )
        project.validate()
        return project

    return _factory


def solid_trait(trait_id: str, level: float, *, weight: float = 1.0, name: str | None = None) -> Trait:
    return Trait(
        id=trait_id,
        name=name or trait_id,
        source=f'webgl:solid:{{"level": {level}}}',
        weight=weight,
    )


@pytest.fixture
def solid_trait_factory() -> Callable[..., Trait]:
    return solid_trait
