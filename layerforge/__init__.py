"""
LayerForge: deterministic generative collection compiler.

Modules are structured to separate project loading, seeded trait selection,
rule enforcement, trait rendering, compositing, and archive export. See
`export_collection.py` for the primary CLI.
"""

from __future__ import annotations

from pathlib import Path

# Base directory convenient for locating bundled presets/templates.
PACKAGE_ROOT = Path(__file__).resolve().parent

ENGINE_NAME = "LayerForge v1.0"

__all__ = ["PACKAGE_ROOT", "ENGINE_NAME"]
