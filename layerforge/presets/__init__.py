"""
Bundled preset overlays for project configuration.

Each `.yaml` file provides a partial project tree that can be merged with a
project file. See `layerforge/project_schema.apply_presets` for merge logic.
"""

from __future__ import annotations

__all__ = []
