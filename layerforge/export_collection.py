"""
Collection export entry point for LayerForge.

Usage:
    python -m layerforge.export_collection --config project.yaml --dry-run
    layerforge --config project.yaml --preset preview --output out/collection.zip
"""

from __future__ import annotations

import argparse
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import sys
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from tqdm import tqdm
import yaml

from . import PACKAGE_ROOT
from .ai_image import AI_GRAPH_PRESETS
from .archive_writer import ArchiveWriter, compute_sha256
from .dispatcher import RenderDispatcher, build_default_dispatcher
from .patterns import DEFAULT_PATTERN
from .project_schema import ProjectConfig, Rule, load_project_config, write_project_template
from .render_cache import RenderCache
from .rules import prune_dangling_rules
from .shaders import SHADER_PRESETS
from .sketches import SKETCH_PRESETS
from .token import GenerationRecord, TokenFailure, generate_token, token_seed_for

LOG = logging.getLogger("layerforge.export")

ProgressCallback = Callable[[float], None]


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True, default=str))


@dataclass(slots=True)
class ExportSummary:
    archive_path: Optional[Path]
    editions_written: int
    failures: List[TokenFailure] = field(default_factory=list)
    violations_repaired: int = 0
    progress: float = 0.0
    stopped: bool = False
    archive_sha256: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archive_path": str(self.archive_path) if self.archive_path else None,
            "editions_written": self.editions_written,
            "failures": [failure.to_dict() for failure in self.failures],
            "violations_repaired": self.violations_repaired,
            "progress": self.progress,
            "stopped": self.stopped,
            "archive_sha256": self.archive_sha256,
            "timings": self.timings,
        }


def now_millis() -> int:
    return int(time.time() * 1000)


def build_manifest(
    project: ProjectConfig,
    *,
    timestamp: int,
    rules: List[Rule],
    violations_repaired: int,
    failures: List[TokenFailure],
) -> Dict[str, Any]:
    manifest: Dict[str, Any] = {
        "name": project.name,
        "collection_size": project.collection_size,
        "seed": project.seed,
        "timestamp": timestamp,
        "engine": project.export.compiler,
        "trait_classes": [
            {
                "id": cls.id,
                "name": cls.name,
                "z_index": cls.z_index,
                "trait_count": len(cls.traits),
            }
            for cls in project.classes
        ],
        "rules": [
            {"id": r.id, "type": r.type, "condition": r.condition, "target": r.target}
            for r in rules
        ],
        "violations_repaired": violations_repaired,
        "failed_editions": [failure.to_dict() for failure in failures],
    }
    if project.metadata:
        manifest["metadata"] = project.metadata
    return manifest


def _run_batch(
    executor: ThreadPoolExecutor,
    project: ProjectConfig,
    editions: range,
    *,
    dispatcher: RenderDispatcher,
    timestamp: int,
    rules: List[Rule],
) -> tuple[List[GenerationRecord], List[TokenFailure]]:
    futures: List[Future[GenerationRecord]] = [
        executor.submit(
            generate_token,
            project,
            edition,
            dispatcher=dispatcher,
            timestamp=timestamp,
            rules=rules,
        )
        for edition in editions
    ]
    records: List[GenerationRecord] = []
    failures: List[TokenFailure] = []
    try:
        for future in futures:
            try:
                records.append(future.result())
            except TokenFailure as failure:
                LOG.error("%s", failure)
                failures.append(failure)
    except Exception:
        for pending in futures:
            pending.cancel()
        raise
    return records, failures


def export_collection(
    project: ProjectConfig,
    *,
    output: Optional[Path] = None,
    cache: Optional[RenderCache] = None,
    dispatcher: Optional[RenderDispatcher] = None,
    timestamp: Optional[int] = None,
    progress: Optional[ProgressCallback] = None,
    stop_event: Optional[threading.Event] = None,
    workers: Optional[int] = None,
    dry_run: bool = False,
) -> ExportSummary:
    """
    Generate every edition of `project` and package them into a zip archive.

    Editions run in batches of `export.batch_size` on a thread pool; each
    batch completes before the next starts. `timestamp` (epoch millis) pins
    the `date`/`timestamp` fields so repeated exports are byte-identical.
    Setting `stop_event` stops issuing batches and discards the partial
    archive.
    """
    output_path = Path(output) if output is not None else project.export.output
    total = project.collection_size
    _log("export_start", project=project.describe(), output=str(output_path))

    if dry_run:
        LOG.info("Dry run enabled; no tokens will be rendered.")
        for edition in range(1, min(total, 5) + 1):
            LOG.info("Token plan | edition=%d seed=%s", edition, token_seed_for(project.seed, edition))
        return ExportSummary(archive_path=None, editions_written=0)

    timestamp = timestamp if timestamp is not None else now_millis()
    rules = prune_dangling_rules(project.rules, project.trait_index())
    if len(rules) != len(project.rules):
        LOG.info("Ignoring %d rule(s) that reference unknown traits.", len(project.rules) - len(rules))

    owns_dispatcher = dispatcher is None
    if dispatcher is None:
        dispatcher = build_default_dispatcher(project, cache)

    batch_size = project.export.batch_size
    worker_count = max(1, min(int(workers or batch_size), batch_size))
    summary = ExportSummary(archive_path=None, editions_written=0)
    started = time.perf_counter()

    try:
        with ArchiveWriter(output_path, timestamp=timestamp) as writer:
            with ThreadPoolExecutor(
                max_workers=worker_count, thread_name_prefix="layerforge-token"
            ) as executor:
                for start in range(1, total + 1, batch_size):
                    if stop_event is not None and stop_event.is_set():
                        summary.stopped = True
                        break
                    editions = range(start, min(total, start + batch_size - 1) + 1)
                    records, failures = _run_batch(
                        executor,
                        project,
                        editions,
                        dispatcher=dispatcher,
                        timestamp=timestamp,
                        rules=rules,
                    )
                    for record in records:
                        writer.write_token(record)
                        summary.violations_repaired += record.violations_repaired
                    summary.editions_written += len(records)
                    summary.failures.extend(failures)
                    summary.progress = (editions.stop - 1) / total
                    if progress is not None:
                        progress(summary.progress)

            if summary.stopped:
                writer.abort()
                _log("export_stopped", editions_written=summary.editions_written)
                return summary

            writer.write_manifest(
                build_manifest(
                    project,
                    timestamp=timestamp,
                    rules=rules,
                    violations_repaired=summary.violations_repaired,
                    failures=summary.failures,
                )
            )
            summary.archive_path = writer.close()
            archive_stats = writer.to_metadata()
    finally:
        if owns_dispatcher:
            dispatcher.close()

    summary.archive_sha256 = compute_sha256(summary.archive_path)
    summary.timings["export_sec"] = time.perf_counter() - started
    stats = dispatcher.cache.stats()
    _log(
        "export_complete",
        sha256=summary.archive_sha256,
        **archive_stats,
        editions=summary.editions_written,
        failures=len(summary.failures),
        violations_repaired=summary.violations_repaired,
        cache_hits=stats.hits,
        cache_misses=stats.misses,
        seconds=round(summary.timings["export_sec"], 3),
    )
    return summary


def preview_token(
    project: ProjectConfig,
    seed: str,
    *,
    dispatcher: Optional[RenderDispatcher] = None,
    cache: Optional[RenderCache] = None,
    timestamp: Optional[int] = None,
) -> GenerationRecord:
    """Render a single token for an arbitrary seed without writing an archive."""
    owns_dispatcher = dispatcher is None
    if dispatcher is None:
        dispatcher = build_default_dispatcher(project, cache)
    try:
        return generate_token(
            project,
            1,
            dispatcher=dispatcher,
            timestamp=timestamp if timestamp is not None else now_millis(),
            seed=seed,
        )
    finally:
        if owns_dispatcher:
            dispatcher.close()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _parse_set_overrides(values: Optional[List[str]]) -> dict[str, object]:
    if not values:
        return {}
    overrides: dict[str, object] = {}
    for item in values:
        if "=" not in item:
            raise ValueError(f"Override '{item}' must use KEY=VALUE format.")
        key, raw_value = item.split("=", 1)
        try:
            value = load_yaml_value(raw_value)
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse override '{item}': {exc}") from exc
        overrides[key.strip()] = value
    return overrides


def load_yaml_value(text: str) -> object:
    """Parse a single YAML value (used for CLI overrides)."""
    return yaml.safe_load(text)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="LayerForge generative collection exporter.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("project.yaml"),
        help="Path to the YAML (or editor JSON) project file.",
    )
    parser.add_argument(
        "--preset",
        action="append",
        dest="presets",
        help="Apply a named preset overlay (can be specified multiple times).",
    )
    parser.add_argument(
        "--set",
        action="append",
        dest="overrides",
        metavar="KEY=VALUE",
        help="Apply inline overrides using dotted paths, e.g., export.width=1024.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Override the archive output path.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without rendering.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of tokens rendered concurrently within a batch (defaults to the batch size).",
    )
    parser.add_argument(
        "--timestamp",
        type=int,
        default=None,
        help="Pin the export timestamp (epoch milliseconds) for reproducible archives.",
    )
    parser.add_argument(
        "--preview",
        metavar="SEED",
        help="Render a single token for SEED to a PNG instead of exporting.",
    )
    parser.add_argument(
        "--init",
        type=Path,
        metavar="PATH",
        help="Write the bundled example project to PATH and exit.",
    )
    parser.add_argument(
        "--list-presets",
        action="store_true",
        help="List available preset overlays and procedural sources, then exit.",
    )
    return parser


def list_available_presets() -> None:
    presets_dir = PACKAGE_ROOT / "presets"
    print("Preset overlays:")
    for path in sorted(presets_dir.glob("*.yaml")):
        print(f"  - {path.stem}")
    print("\nShader presets (webgl:<id>):")
    for name in sorted(SHADER_PRESETS):
        print(f"  - {name}")
    print("\nSketch presets (p5:<id>):")
    for name in sorted(SKETCH_PRESETS):
        print(f"  - {name}")
    print(f"\nPattern visualiser (strudel:<id>), default pattern '{DEFAULT_PATTERN}'")
    print("\nAI graphs (sd:{\"graphId\": ...}):")
    for name, spec in sorted(AI_GRAPH_PRESETS.items()):
        print(f"  - {name}: {spec.name}")


def _write_preview(record: GenerationRecord, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if record.composite_image is None:
        LOG.warning("Preview seed '%s' produced no rendered layers.", record.seed)
    else:
        path.write_bytes(record.composite_image)
    path.with_suffix(".json").write_text(json.dumps(record.metadata, indent=2))
    LOG.info("Preview written to %s", path)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.list_presets:
        list_available_presets()
        return 0

    _setup_logging(args.verbose)

    if args.init:
        write_project_template(args.init)
        LOG.info("Example project written to %s", args.init)
        return 0

    overrides = _parse_set_overrides(args.overrides)
    project = load_project_config(
        args.config,
        extra_presets=args.presets,
        overrides=overrides,
    )

    if args.preview:
        record = preview_token(project, args.preview, timestamp=args.timestamp)
        _write_preview(record, args.output or Path("preview.png"))
        return 0

    with tqdm(total=project.collection_size, unit="token", disable=args.dry_run) as bar:

        def _update(fraction: float) -> None:
            bar.n = round(fraction * project.collection_size)
            bar.refresh()

        summary = export_collection(
            project,
            output=args.output,
            timestamp=args.timestamp,
            progress=_update,
            workers=args.workers,
            dry_run=args.dry_run,
        )

    if summary.failures:
        LOG.warning("%d edition(s) failed; see manifest failed_editions.", len(summary.failures))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
