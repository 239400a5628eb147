"""
Project schema and loader utilities for LayerForge.

The schema is intentionally lightweight (dataclasses + manual validation) so
that we avoid adding heavy dependencies. Projects are expressed as YAML and can
be combined with preset overlays stored under `layerforge/presets`. Project
files saved by the editor (camelCase JSON) load through the same path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

import copy
import json
import math

import yaml

from . import ENGINE_NAME, PACKAGE_ROOT
from .compositor import BLEND_MODES


RULE_TYPES = ("require", "exclude", "mutex")
FX_TYPES = ("crt", "halftone", "glitch")
EXPORT_MODES = ("static", "procedural", "hybrid")
RENDER_ERROR_POLICIES = ("fail", "blank")


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Trait:
    """One selectable layer option inside a trait class."""

    id: str
    name: str
    source: str = ""
    weight: float = 1.0
    class_name: str = ""

    def validate(self) -> None:
        if not self.id:
            raise ValueError("Trait id cannot be empty.")
        if not isinstance(self.weight, (int, float)) or isinstance(self.weight, bool):
            raise TypeError(f"Trait '{self.id}': weight must be a number.")
        if not math.isfinite(self.weight) or self.weight < 0:
            raise ValueError(f"Trait '{self.id}': weight must be a finite value >= 0.")


@dataclass(slots=True)
class TraitClass:
    id: str
    name: str
    z_index: int = 0
    traits: List[Trait] = field(default_factory=list)
    blend_mode: str = "normal"
    opacity: float = 1.0

    @property
    def total_weight(self) -> float:
        return float(sum(trait.weight for trait in self.traits))

    def validate(self) -> None:
        if not self.id:
            raise ValueError("Trait class id cannot be empty.")
        if self.blend_mode not in BLEND_MODES:
            raise ValueError(
                f"Class '{self.id}': blend_mode must be one of {list(BLEND_MODES)}."
            )
        if not 0.0 <= self.opacity <= 1.0:
            raise ValueError(f"Class '{self.id}': opacity must be within [0, 1].")
        for trait in self.traits:
            trait.validate()


@dataclass(slots=True, frozen=True)
class Rule:
    id: str
    type: str
    condition: str
    target: str

    def validate(self) -> None:
        if self.type not in RULE_TYPES:
            raise ValueError(
                f"Rule '{self.id}': type must be one of {list(RULE_TYPES)}."
            )
        if not self.condition or not self.target:
            raise ValueError(f"Rule '{self.id}': condition and target are required.")


@dataclass(slots=True)
class FXConfig:
    id: str
    type: str
    name: str = ""
    enabled: bool = True
    params: Dict[str, float] = field(default_factory=dict)

    def validate(self) -> None:
        if self.type not in FX_TYPES:
            raise ValueError(f"FX '{self.id}': type must be one of {list(FX_TYPES)}.")
        intensity = self.params.get("intensity")
        if intensity is not None and not 0.0 <= float(intensity) <= 1.0:
            raise ValueError(f"FX '{self.id}': params.intensity must be within [0, 1].")


@dataclass(slots=True)
class ExportConfig:
    width: int = 512
    height: int = 512
    batch_size: int = 8
    render_workers: int = 4
    output: Path = Path("outputs/collection.zip")
    trait_mode: str = "static"
    class_modes: Dict[str, str] = field(default_factory=dict)
    description: str = "Generated with LayerForge"
    compiler: str = ENGINE_NAME
    on_render_error: str = "fail"

    def validate(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("export.width and export.height must be > 0.")
        if self.batch_size <= 0:
            raise ValueError("export.batch_size must be > 0.")
        if self.render_workers <= 0:
            raise ValueError("export.render_workers must be > 0.")
        if self.trait_mode not in EXPORT_MODES:
            raise ValueError(f"export.trait_mode must be one of {list(EXPORT_MODES)}.")
        for class_id, mode in self.class_modes.items():
            if mode not in EXPORT_MODES:
                raise ValueError(
                    f"export.class_modes['{class_id}'] must be one of {list(EXPORT_MODES)}."
                )
        if self.on_render_error not in RENDER_ERROR_POLICIES:
            raise ValueError(
                f"export.on_render_error must be one of {list(RENDER_ERROR_POLICIES)}."
            )

    def mode_for(self, class_id: str) -> str:
        return self.class_modes.get(class_id, self.trait_mode)


@dataclass(slots=True)
class AIImageConfig:
    endpoint: Optional[str] = None
    timeout: float = 60.0
    api_key_env: str = "LAYERFORGE_AI_API_KEY"
    cache_dir: Optional[Path] = None

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ValueError("ai_image.timeout must be > 0.")
        if self.endpoint is not None and not str(self.endpoint).startswith(("http://", "https://")):
            raise ValueError("ai_image.endpoint must be an http(s) URL.")


@dataclass(slots=True)
class ProjectConfig:
    name: str
    seed: str
    collection_size: int
    classes: List[TraitClass] = field(default_factory=list)
    rules: List[Rule] = field(default_factory=list)
    fx: List[FXConfig] = field(default_factory=list)
    export: ExportConfig = field(default_factory=ExportConfig)
    ai_image: AIImageConfig = field(default_factory=AIImageConfig)
    assets_root: Path = Path(".")
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.name:
            raise ValueError("Project name cannot be empty.")
        if not isinstance(self.seed, str) or not self.seed:
            raise ValueError("Project seed must be a non-empty string.")
        if self.collection_size < 1:
            raise ValueError("collection_size must be >= 1.")
        if not self.classes:
            raise ValueError("At least one trait class is required.")
        class_ids: set[str] = set()
        trait_ids: set[str] = set()
        for trait_class in self.classes:
            trait_class.validate()
            if trait_class.id in class_ids:
                raise ValueError(f"Duplicate trait class id '{trait_class.id}'.")
            class_ids.add(trait_class.id)
            for trait in trait_class.traits:
                if trait.id in trait_ids:
                    raise ValueError(f"Duplicate trait id '{trait.id}'.")
                trait_ids.add(trait.id)
        for rule in self.rules:
            rule.validate()
        for fx in self.fx:
            fx.validate()
        self.export.validate()
        for class_id in self.export.class_modes:
            if class_id not in class_ids:
                raise ValueError(f"export.class_modes references unknown class '{class_id}'.")
        self.ai_image.validate()

    def trait_index(self) -> Dict[str, Trait]:
        return {trait.id: trait for cls in self.classes for trait in cls.traits}

    def describe(self) -> Dict[str, Any]:
        """Return a JSON-serializable summary (useful for logging)."""
        return {
            "name": self.name,
            "seed": self.seed,
            "collection_size": self.collection_size,
            "classes": [
                {
                    "id": cls.id,
                    "name": cls.name,
                    "z_index": cls.z_index,
                    "trait_count": len(cls.traits),
                    "total_weight": cls.total_weight,
                    "blend_mode": cls.blend_mode,
                    "opacity": cls.opacity,
                }
                for cls in self.classes
            ],
            "rules": [
                {"id": r.id, "type": r.type, "condition": r.condition, "target": r.target}
                for r in self.rules
            ],
            "fx": [
                {"id": fx.id, "type": fx.type, "enabled": fx.enabled, "params": dict(fx.params)}
                for fx in self.fx
            ],
            "export": {
                "width": self.export.width,
                "height": self.export.height,
                "batch_size": self.export.batch_size,
                "render_workers": self.export.render_workers,
                "output": str(self.export.output),
                "trait_mode": self.export.trait_mode,
                "class_modes": dict(self.export.class_modes),
                "on_render_error": self.export.on_render_error,
            },
            "ai_image": {
                "endpoint": self.ai_image.endpoint,
                "timeout": self.ai_image.timeout,
                "cache_dir": str(self.ai_image.cache_dir) if self.ai_image.cache_dir else None,
            },
            "assets_root": str(self.assets_root),
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.describe(), indent=2)


# ---------------------------------------------------------------------------
# Loading utilities
# ---------------------------------------------------------------------------


def _load_yaml_file(path: Path) -> Mapping[str, Any]:
    raw = yaml.safe_load(path.read_text())
    if raw is None:
        raise ValueError(f"Project file '{path}' is empty.")
    if not isinstance(raw, Mapping):
        raise TypeError(f"Project '{path}' must be a mapping at top level.")
    return raw


def _deep_update(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> None:
    for key, value in overlay.items():
        if (
            isinstance(value, Mapping)
            and key in base
            and isinstance(base[key], MutableMapping)
        ):
            _deep_update(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def _first(entry: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    # Editor exports use camelCase keys; project files use snake_case.
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return default


def load_preset_dict(name: str) -> Mapping[str, Any]:
    """Load a preset overlay by name."""
    preset_path = PACKAGE_ROOT / "presets" / f"{name}.yaml"
    if not preset_path.exists():
        available = sorted(p.stem for p in (PACKAGE_ROOT / "presets").glob("*.yaml"))
        raise FileNotFoundError(
            f"Preset '{name}' not found. Available presets: {', '.join(available)}"
        )
    return _load_yaml_file(preset_path)


def apply_presets(
    base_config: MutableMapping[str, Any], preset_names: Iterable[str]
) -> MutableMapping[str, Any]:
    """Apply one or more preset overlays to the base project mapping."""
    for name in preset_names:
        overlay = load_preset_dict(name)
        _deep_update(base_config, overlay)
    return base_config


def _parse_trait(entry: Mapping[str, Any], class_name: str) -> Trait:
    try:
        trait_id = str(entry["id"])
    except KeyError as exc:
        raise KeyError(f"Trait entries in class '{class_name}' must include 'id'.") from exc
    weight = _first(entry, "weight", default=1.0)
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise TypeError(f"Trait '{trait_id}': weight must be a number.")
    return Trait(
        id=trait_id,
        name=str(_first(entry, "name", default=trait_id)),
        source=str(_first(entry, "source", "imageSrc", default="")),
        weight=float(weight),
        class_name=class_name,
    )


def _parse_class(entry: Mapping[str, Any], position: int) -> TraitClass:
    try:
        class_id = str(entry["id"])
    except KeyError as exc:
        raise KeyError(f"Trait class #{position} must include 'id'.") from exc
    name = str(_first(entry, "name", default=class_id))
    traits = [_parse_trait(t, name) for t in (entry.get("traits") or [])]
    return TraitClass(
        id=class_id,
        name=name,
        z_index=int(_first(entry, "z_index", "zIndex", default=position)),
        traits=traits,
        blend_mode=str(_first(entry, "blend_mode", "blendMode", default="normal")),
        opacity=float(_first(entry, "opacity", default=1.0)),
    )


def _parse_rule(entry: Mapping[str, Any], position: int) -> Rule:
    try:
        return Rule(
            id=str(_first(entry, "id", default=f"rule-{position}")),
            type=str(entry["type"]),
            condition=str(entry["condition"]),
            target=str(entry["target"]),
        )
    except KeyError as exc:
        raise KeyError(
            f"Rule #{position} must include 'type', 'condition' and 'target'. Missing: {exc}"
        ) from exc


def _parse_fx(entry: Mapping[str, Any], position: int) -> FXConfig:
    fx_type = str(entry.get("type", ""))
    return FXConfig(
        id=str(_first(entry, "id", default=f"fx-{position}")),
        type=fx_type,
        name=str(_first(entry, "name", default=fx_type)),
        enabled=bool(_first(entry, "enabled", default=True)),
        params={str(k): float(v) for k, v in (entry.get("params") or {}).items()},
    )


def _resolve_path(value: Any, base_dir: Path) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return path


def _parse_project_mapping(mapping: Mapping[str, Any], config_dir: Path) -> ProjectConfig:
    name = _first(mapping, "name", "projectName")
    if not name:
        raise ValueError("Project file must include a name.")
    seed = _first(mapping, "seed")
    if seed is None:
        raise ValueError("Project file must include a seed.")

    classes_cfg = _first(mapping, "classes", "traitClasses", default=[])
    rules_cfg = mapping.get("rules") or []
    fx_cfg = _first(mapping, "fx", "fxConfigs", default=[])
    export_cfg = mapping.get("export") or {}
    ai_cfg = mapping.get("ai_image") or {}

    cache_dir = ai_cfg.get("cache_dir")
    project = ProjectConfig(
        name=str(name),
        seed=str(seed),
        collection_size=int(_first(mapping, "collection_size", "collectionSize", default=100)),
        classes=[_parse_class(entry, idx) for idx, entry in enumerate(classes_cfg)],
        rules=[_parse_rule(entry, idx) for idx, entry in enumerate(rules_cfg)],
        fx=[_parse_fx(entry, idx) for idx, entry in enumerate(fx_cfg)],
        export=ExportConfig(
            width=int(export_cfg.get("width", 512)),
            height=int(export_cfg.get("height", 512)),
            batch_size=int(export_cfg.get("batch_size", 8)),
            render_workers=int(export_cfg.get("render_workers", 4)),
            output=_resolve_path(export_cfg.get("output", "outputs/collection.zip"), config_dir),
            trait_mode=str(export_cfg.get("trait_mode", "static")),
            class_modes={str(k): str(v) for k, v in (export_cfg.get("class_modes") or {}).items()},
            description=str(export_cfg.get("description", "Generated with LayerForge")),
            compiler=str(export_cfg.get("compiler", ENGINE_NAME)),
            on_render_error=str(export_cfg.get("on_render_error", "fail")),
        ),
        ai_image=AIImageConfig(
            endpoint=ai_cfg.get("endpoint"),
            timeout=float(ai_cfg.get("timeout", 60.0)),
            api_key_env=str(ai_cfg.get("api_key_env", "LAYERFORGE_AI_API_KEY")),
            cache_dir=_resolve_path(cache_dir, config_dir) if cache_dir else None,
        ),
        assets_root=_resolve_path(mapping.get("assets_root", "."), config_dir),
        metadata=dict(mapping.get("metadata") or {}),
    )

    project.validate()
    return project


def load_project_config(
    config_path: Path,
    *,
    extra_presets: Optional[Sequence[str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ProjectConfig:
    """
    Load a project file, optionally applying preset overlays and inline overrides.

    Parameters
    ----------
    config_path:
        Path to the YAML (or editor JSON) project file.
    extra_presets:
        Optional sequence of preset names (without `.yaml`) to overlay on top
        of the project.
    overrides:
        Optional mapping of dotted key paths to values, e.g.
        `{"export.width": 1024, "seed": "drop-2"}`.
    """

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Project file '{config_path}' does not exist.")

    raw_mapping = dict(_load_yaml_file(config_path))

    if extra_presets:
        apply_presets(raw_mapping, extra_presets)

    if overrides:
        for dotted_key, value in overrides.items():
            parts = dotted_key.split(".")
            cursor: MutableMapping[str, Any] = raw_mapping
            for part in parts[:-1]:
                if part not in cursor or not isinstance(cursor[part], MutableMapping):
                    cursor[part] = {}
                cursor = cursor[part]  # type: ignore[assignment]
            cursor[parts[-1]] = value

    config_dir = config_path.parent.resolve()
    return _parse_project_mapping(raw_mapping, config_dir)


def write_project_template(path: Path) -> None:
    """Write the bundled example project to `path`."""
    template_path = PACKAGE_ROOT / "templates" / "project.yaml"
    if not template_path.exists():
        raise FileNotFoundError("Bundled project.yaml template is missing.")
    path.write_text(template_path.read_text())
