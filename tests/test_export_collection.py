from __future__ import annotations

import json
from pathlib import Path
import threading
import zipfile

import pytest

from layerforge import export_collection as ec
from layerforge.archive_writer import compute_sha256
from layerforge.dispatcher import RenderDispatcher
from layerforge.project_schema import Rule, Trait, TraitClass
from layerforge.render_cache import RenderCache
from layerforge.token import generate_token

TIMESTAMP = 1_700_000_000_000


def _dispatcher(adapter) -> RenderDispatcher:
    return RenderDispatcher(RenderCache(), {"webgl": adapter}, render_workers=2)


def _classes(solid_trait_factory) -> list[TraitClass]:
    return [
        TraitClass(
            id=f"c{c}",
            name=f"Class {c}",
            z_index=c,
            traits=[solid_trait_factory(f"c{c}-t{t}", t / 5, weight=t + 1) for t in range(5)],
        )
        for c in range(3)
    ]


def _read_archive(path: Path) -> dict[str, bytes]:
    with zipfile.ZipFile(path) as archive:
        return {name: archive.read(name) for name in archive.namelist()}


def test_export_writes_every_edition(make_project, solid_trait_factory, solid_adapter) -> None:
    project = make_project(_classes(solid_trait_factory), collection_size=10, batch_size=4)
    project.metadata = {"artist": "tester"}
    fractions: list[float] = []

    with _dispatcher(solid_adapter) as dispatcher:
        summary = ec.export_collection(
            project, dispatcher=dispatcher, timestamp=TIMESTAMP, progress=fractions.append
        )

    assert summary.archive_path == project.export.output
    assert summary.editions_written == 10
    assert summary.failures == []
    assert fractions == pytest.approx([0.4, 0.8, 1.0])

    entries = _read_archive(summary.archive_path)
    assert sorted(name for name in entries if name.startswith("images/")) == sorted(
        f"images/{n}.png" for n in range(1, 11)
    )
    metadata = [json.loads(entries[f"metadata/{n}.json"]) for n in range(1, 11)]
    assert [item["seed"] for item in metadata] == [f"base-{n}" for n in range(1, 11)]
    assert all(item["date"] == TIMESTAMP for item in metadata)
    assert len({item["dna"] for item in metadata}) > 1

    manifest = json.loads(entries["manifest.json"])
    assert manifest["collection_size"] == 10
    assert manifest["timestamp"] == TIMESTAMP
    assert manifest["failed_editions"] == []
    assert manifest["metadata"] == {"artist": "tester"}
    assert [cls["trait_count"] for cls in manifest["trait_classes"]] == [5, 5, 5]


def test_pinned_timestamp_gives_identical_archives(
    make_project, solid_trait_factory, solid_adapter, tmp_path: Path
) -> None:
    project = make_project(_classes(solid_trait_factory), collection_size=6, batch_size=4)
    digests = []
    for name in ("first.zip", "second.zip"):
        with _dispatcher(solid_adapter) as dispatcher:
            summary = ec.export_collection(
                project, output=tmp_path / name, dispatcher=dispatcher, timestamp=TIMESTAMP
            )
        digests.append(compute_sha256(summary.archive_path))
    assert digests[0] == digests[1]


def test_batch_size_does_not_change_the_archive(
    make_project, solid_trait_factory, solid_adapter, tmp_path: Path
) -> None:
    rules = [Rule(id="no-pair", type="exclude", condition="c0-t4", target="c1-t4")]
    archives = {}
    for batch_size in (1, 3, 8):
        project = make_project(
            _classes(solid_trait_factory), rules=rules, collection_size=9, batch_size=batch_size
        )
        with _dispatcher(solid_adapter) as dispatcher:
            summary = ec.export_collection(
                project, output=tmp_path / f"batch-{batch_size}.zip", dispatcher=dispatcher, timestamp=TIMESTAMP
            )
        archives[batch_size] = summary.archive_path

    entries = {size: _read_archive(path) for size, path in archives.items()}
    for n in range(1, 10):
        name = f"metadata/{n}.json"
        assert entries[1][name] == entries[3][name] == entries[8][name]
    assert len({compute_sha256(path) for path in archives.values()}) == 1


def test_single_edition_matches_full_export(make_project, solid_trait_factory, solid_adapter) -> None:
    project = make_project(_classes(solid_trait_factory), collection_size=9, batch_size=4)
    with _dispatcher(solid_adapter) as dispatcher:
        summary = ec.export_collection(project, dispatcher=dispatcher, timestamp=TIMESTAMP)
    entries = _read_archive(summary.archive_path)

    with _dispatcher(solid_adapter) as dispatcher:
        alone = generate_token(project, 7, dispatcher=dispatcher, timestamp=TIMESTAMP)

    assert alone.metadata == json.loads(entries["metadata/7.json"])
    assert alone.composite_image == entries["images/7.png"]


def test_export_reports_archive_digest(
    make_project, solid_trait_factory, solid_adapter, caplog: pytest.LogCaptureFixture
) -> None:
    project = make_project(_classes(solid_trait_factory), collection_size=3)

    with caplog.at_level("INFO", logger="layerforge.export"):
        with _dispatcher(solid_adapter) as dispatcher:
            summary = ec.export_collection(project, dispatcher=dispatcher, timestamp=TIMESTAMP)

    assert summary.archive_sha256 == compute_sha256(summary.archive_path)
    assert summary.to_dict()["archive_sha256"] == summary.archive_sha256
    events = [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "layerforge.export" and record.getMessage().startswith("{")
    ]
    complete = next(event for event in events if event["event"] == "export_complete")
    assert complete["sha256"] == summary.archive_sha256
    assert complete["output"] == str(summary.archive_path)
    assert (complete["tokens"], complete["images"]) == (3, 3)


def test_failed_editions_are_reported(make_project, solid_trait_factory, solid_adapter) -> None:
    classes = [
        TraitClass(id="bg", name="Background", traits=[solid_trait_factory("bg", 0.5)]),
        TraitClass(id="bad", name="Bad", z_index=1, traits=[Trait(id="ghost", name="Ghost", source="p5:particles:")]),
    ]
    project = make_project(classes, collection_size=2)

    with _dispatcher(solid_adapter) as dispatcher:
        summary = ec.export_collection(project, dispatcher=dispatcher, timestamp=TIMESTAMP)

    assert summary.editions_written == 0
    assert [failure.edition for failure in summary.failures] == [1, 2]
    manifest = json.loads(_read_archive(summary.archive_path)["manifest.json"])
    assert [entry["trait_id"] for entry in manifest["failed_editions"]] == ["ghost", "ghost"]
    assert summary.to_dict()["failures"][0]["seed"] == "base-1"


def test_dangling_rules_are_dropped_from_manifest(make_project, solid_trait_factory, solid_adapter) -> None:
    rules = [
        Rule(id="keep", type="exclude", condition="c0-t0", target="c1-t0"),
        Rule(id="stale", type="require", condition="c0-t1", target="deleted-trait"),
    ]
    project = make_project(_classes(solid_trait_factory), rules=rules, collection_size=2)

    with _dispatcher(solid_adapter) as dispatcher:
        summary = ec.export_collection(project, dispatcher=dispatcher, timestamp=TIMESTAMP)

    manifest = json.loads(_read_archive(summary.archive_path)["manifest.json"])
    assert [rule["id"] for rule in manifest["rules"]] == ["keep"]


def test_stop_event_discards_archive(make_project, solid_trait_factory, solid_adapter) -> None:
    project = make_project(_classes(solid_trait_factory), collection_size=4)
    stop = threading.Event()
    stop.set()

    with _dispatcher(solid_adapter) as dispatcher:
        summary = ec.export_collection(project, dispatcher=dispatcher, timestamp=TIMESTAMP, stop_event=stop)

    assert summary.stopped is True
    assert summary.archive_path is None
    output_dir = project.export.output.parent
    assert not project.export.output.exists()
    assert not [path for path in output_dir.iterdir() if path.name.endswith(".partial")]


def test_dry_run_renders_nothing(make_project, solid_trait_factory, solid_adapter) -> None:
    project = make_project(_classes(solid_trait_factory))

    summary = ec.export_collection(project, dry_run=True)

    assert summary.archive_path is None
    assert summary.editions_written == 0
    assert solid_adapter.calls == []
    assert not project.export.output.exists()


def test_preview_token_uses_given_seed(make_project, solid_trait_factory, solid_adapter) -> None:
    project = make_project(_classes(solid_trait_factory))
    with _dispatcher(solid_adapter) as dispatcher:
        record = ec.preview_token(project, "lookbook", dispatcher=dispatcher, timestamp=TIMESTAMP)
    assert record.seed == "lookbook"
    assert record.composite_image is not None


def test_parse_set_overrides() -> None:
    overrides = ec._parse_set_overrides(["export.width=32", "seed=drop-2", "export.trait_mode=hybrid"])
    assert overrides == {"export.width": 32, "seed": "drop-2", "export.trait_mode": "hybrid"}
    with pytest.raises(ValueError):
        ec._parse_set_overrides(["missing-equals"])


def test_main_list_presets(capsys: pytest.CaptureFixture[str]) -> None:
    assert ec.main(["--list-presets"]) == 0
    out = capsys.readouterr().out
    assert "preview" in out
    assert "perlin_noise" in out
    assert "portrait_nft" in out


def test_main_init_export_and_preview(tmp_path: Path) -> None:
    config = tmp_path / "project.yaml"
    assert ec.main(["--init", str(config)]) == 0
    assert config.exists()

    common = [
        "--config",
        str(config),
        "--preset",
        "preview",
        "--set",
        "collection_size=2",
        "--set",
        "export.width=32",
        "--set",
        "export.height=32",
        "--timestamp",
        str(TIMESTAMP),
    ]
    archive = tmp_path / "drop.zip"
    assert ec.main(common + ["--output", str(archive)]) == 0
    entries = _read_archive(archive)
    assert {"images/1.png", "images/2.png", "manifest.json"} <= set(entries)
    assert json.loads(entries["metadata/1.json"])["seed"] == "signal-drift-1"

    preview = tmp_path / "preview" / "token.png"
    assert ec.main(common + ["--preview", "custom-seed", "--output", str(preview)]) == 0
    assert preview.read_bytes()[:4] == b"\x89PNG"
    assert json.loads(preview.with_suffix(".json").read_text())["seed"] == "custom-seed"
