"""Tests for the zip archive codec."""

import json
import zipfile
from datetime import datetime
from pathlib import Path

import pytest

from roo_task_man.archive import (
    MANIFEST_NAME,
    collision_free,
    count_files,
    export_task,
    export_tasks,
    import_any,
    import_task,
    inspect_ids,
    parse_manifest,
)
from roo_task_man.errors import ArchiveIOError, ManifestInvalid, ManifestMissing

from conftest import make_task


def write_zip(path: Path, entries: dict[str, bytes | str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return path


def snapshot(root: Path) -> dict[str, bytes]:
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in root.rglob("*") if p.is_file()}


class TestParseManifest:
    """Tests for manifest version detection."""

    def test_v2_with_tasks_is_multi(self, tmp_path: Path):
        raw = json.dumps({"version": 2, "id": "single", "tasks": [{"id": "a"}, {"id": "b"}]}).encode()
        manifest = parse_manifest(raw, tmp_path / "x.zip")
        assert manifest.is_multi
        assert manifest.ids == ["a", "b"]

    def test_v2_with_empty_tasks_falls_back_to_v1(self, tmp_path: Path):
        raw = json.dumps({"version": 2, "tasks": [], "id": "legacy", "title": "Legacy"}).encode()
        manifest = parse_manifest(raw, tmp_path / "x.zip")
        assert not manifest.is_multi
        assert manifest.ids == ["legacy"]
        assert manifest.tasks[0].title == "Legacy"

    def test_v1_without_version(self, tmp_path: Path):
        raw = json.dumps({"id": "t1", "title": "T", "createdAt": "2024-01-01T00:00:00Z", "pluginId": "p"}).encode()
        manifest = parse_manifest(raw, tmp_path / "x.zip")
        assert manifest.version == 1
        assert manifest.tasks[0].plugin_id == "p"

    def test_version_below_two_is_v1(self, tmp_path: Path):
        raw = json.dumps({"version": 1, "tasks": [{"id": "a"}], "id": "solo"}).encode()
        assert parse_manifest(raw, tmp_path / "x.zip").ids == ["solo"]

    def test_invalid_json_raises(self, tmp_path: Path):
        with pytest.raises(ManifestInvalid):
            parse_manifest(b"{not json", tmp_path / "x.zip")

    def test_non_object_raises(self, tmp_path: Path):
        with pytest.raises(ManifestInvalid):
            parse_manifest(b"[1, 2]", tmp_path / "x.zip")

    def test_v2_without_object_entries_falls_back_to_v1(self, tmp_path: Path):
        raw = json.dumps({"version": 2, "tasks": [1, "a", None], "id": "legacy"}).encode()
        manifest = parse_manifest(raw, tmp_path / "x.zip")
        assert not manifest.is_multi
        assert manifest.ids == ["legacy"]


class TestExportSingle:
    """Tests for single-task export."""

    def test_writes_v1_manifest_and_files(self, tmp_path: Path):
        task = make_task(tmp_path / "src", "t123", {"sub/file.txt": "hello"})
        zip_path = tmp_path / "out" / "nested" / "t123.zip"

        export_task(task, zip_path, plugin_id="my.plugin")

        assert zip_path.exists()
        with zipfile.ZipFile(zip_path) as zf:
            names = zf.namelist()
            manifest = json.loads(zf.read(MANIFEST_NAME))
            assert zf.read("t123/sub/file.txt") == b"hello"
        assert MANIFEST_NAME in names
        assert manifest["id"] == "t123"
        assert manifest["pluginId"] == "my.plugin"
        assert "version" not in manifest

    def test_manifest_is_indented(self, tmp_path: Path):
        task = make_task(tmp_path / "src", "t1")
        zip_path = export_task(task, tmp_path / "t1.zip")
        with zipfile.ZipFile(zip_path) as zf:
            assert b'\n  "id"' in zf.read(MANIFEST_NAME)

    def test_missing_task_dir_raises_and_leaves_no_file(self, tmp_path: Path):
        task = make_task(tmp_path / "src", "t1")
        task.path = tmp_path / "does-not-exist"
        zip_path = tmp_path / "out.zip"
        with pytest.raises(ArchiveIOError):
            export_task(task, zip_path)
        assert not zip_path.exists()
        assert list(tmp_path.glob("*.part")) == []


class TestExportMulti:
    """Tests for multi-task export."""

    def test_entries_prefixed_with_id_in_given_order(self, tmp_path: Path):
        t1 = make_task(tmp_path / "src", "t1", {"a.txt": "1"})
        t2 = make_task(tmp_path / "src", "t2", {"b/c.txt": "2"})
        zip_path = export_tasks([t2, t1], tmp_path / "multi.zip")

        with zipfile.ZipFile(zip_path) as zf:
            manifest = json.loads(zf.read(MANIFEST_NAME))
            names = set(zf.namelist())
        assert manifest["version"] == 2
        assert [t["id"] for t in manifest["tasks"]] == ["t2", "t1"]
        assert {"t1/a.txt", "t2/b/c.txt"} <= names

    def test_progress_counts_every_file(self, tmp_path: Path):
        t1 = make_task(tmp_path / "src", "t1", {"a.txt": "1", "b.txt": "2"})
        t2 = make_task(tmp_path / "src", "t2", {"deep/er/c.txt": "3"})
        calls = []

        export_tasks([t1, t2], tmp_path / "multi.zip", on_progress=lambda c, t: calls.append((c, t)))

        assert count_files([t1, t2]) == 3
        assert calls == [(1, 3), (2, 3), (3, 3), (3, 3)]


class TestRoundTrip:
    """Export followed by import reproduces every file."""

    def test_multi_round_trip_into_tasks_dir(self, tmp_path: Path):
        files1 = {"ui_messages.json": "[]", "nested/deep/data.bin": b"\x00\x01\x02"}
        files2 = {"api_conversation_history.json": '{"x": 1}'}
        t1 = make_task(tmp_path / "src", "t1", files1)
        t2 = make_task(tmp_path / "src", "t2", files2)
        zip_path = export_tasks([t1, t2], tmp_path / "multi.zip")

        dest = tmp_path / "dest"
        (dest / "tasks").mkdir(parents=True)
        result = import_any(zip_path, dest)

        assert result.ids == ["t1", "t2"]
        assert snapshot(dest / "tasks" / "t1") == snapshot(t1.path)
        assert snapshot(dest / "tasks" / "t2") == snapshot(t2.path)
        assert result.destinations == {"t1": dest / "tasks" / "t1", "t2": dest / "tasks" / "t2"}

    def test_multi_round_trip_without_tasks_dir(self, tmp_path: Path):
        t1 = make_task(tmp_path / "src", "t1", {"sub/t1.txt": "t1"})
        zip_path = export_tasks([t1], tmp_path / "multi.zip")

        dest = tmp_path / "dest"
        dest.mkdir()
        import_any(zip_path, dest)

        assert (dest / "t1" / "sub" / "t1.txt").read_text() == "t1"
        assert not (dest / "tasks").exists()

    def test_single_round_trip(self, tmp_path: Path):
        task = make_task(tmp_path / "src", "t123", {"sub/file.txt": "hello"})
        zip_path = export_task(task, tmp_path / "out.zip")

        dest = tmp_path / "dest"
        (dest / "tasks").mkdir(parents=True)
        result = import_any(zip_path, dest)

        assert result.ids == ["t123"]
        assert (dest / "tasks" / "t123" / "sub" / "file.txt").read_text() == "hello"


class TestImportMulti:
    """Tests for multi-task import."""

    def test_skips_entries_not_in_manifest(self, tmp_path: Path):
        manifest = json.dumps({"version": 2, "tasks": [{"id": "a"}]})
        zip_path = write_zip(tmp_path / "m.zip", {
            MANIFEST_NAME: manifest,
            "a/keep.txt": "yes",
            "b/skip.txt": "no",
            "stray.txt": "no",
        })
        dest = tmp_path / "dest"
        dest.mkdir()

        result = import_any(zip_path, dest)

        assert (dest / "a" / "keep.txt").read_text() == "yes"
        assert not (dest / "b").exists()
        assert not (dest / "stray.txt").exists()
        assert result.files_extracted == 1

    def test_unsafe_id_rejected_before_extracting(self, tmp_path: Path):
        manifest = json.dumps({"version": 2, "tasks": [{"id": "ok"}, {"id": "../up"}]})
        zip_path = write_zip(tmp_path / "m.zip", {
            MANIFEST_NAME: manifest,
            "ok/a.txt": "a",
        })
        dest = tmp_path / "dest"
        dest.mkdir()

        with pytest.raises(ManifestInvalid):
            import_any(zip_path, dest)

        assert snapshot(dest) == {}

    def test_rejects_path_traversal(self, tmp_path: Path):
        manifest = json.dumps({"version": 2, "tasks": [{"id": "a"}]})
        zip_path = write_zip(tmp_path / "m.zip", {
            MANIFEST_NAME: manifest,
            "a/../../escape.txt": "bad",
            "a/ok.txt": "ok",
        })
        dest = tmp_path / "dest"
        dest.mkdir()

        import_any(zip_path, dest)

        assert not (tmp_path / "escape.txt").exists()
        assert (dest / "a" / "ok.txt").read_text() == "ok"

    def test_existing_task_is_not_overwritten(self, tmp_path: Path):
        manifest = json.dumps({"version": 2, "tasks": [{"id": "a"}]})
        zip_path = write_zip(tmp_path / "m.zip", {MANIFEST_NAME: manifest, "a/f.txt": "new"})
        dest = tmp_path / "dest"
        (dest / "tasks" / "a").mkdir(parents=True)
        (dest / "tasks" / "a" / "f.txt").write_text("old")

        result = import_any(zip_path, dest)

        assert (dest / "tasks" / "a" / "f.txt").read_text() == "old"
        new_dir = result.destinations["a"]
        assert new_dir.name.startswith("a-copy-")
        assert (new_dir / "f.txt").read_text() == "new"


class TestImportSingle:
    """Tests for single-task import."""

    def test_collision_creates_copy(self, tmp_path: Path):
        task = make_task(tmp_path / "src", "t1", {"f.txt": "archived"})
        zip_path = export_task(task, tmp_path / "t1.zip")
        dest = tmp_path / "dest"
        existing = dest / "tasks" / "t1"
        existing.mkdir(parents=True)
        (existing / "f.txt").write_text("local")
        (existing / "only-local.txt").write_text("keep me")

        result = import_task(zip_path, dest)

        new_dir = result.destinations["t1"]
        assert new_dir != existing
        assert new_dir.name.startswith("t1-copy-")
        assert (existing / "f.txt").read_text() == "local"
        assert (existing / "only-local.txt").read_text() == "keep me"
        assert (new_dir / "f.txt").read_text() == "archived"

    def test_tolerates_unprefixed_entries(self, tmp_path: Path):
        zip_path = write_zip(tmp_path / "legacy.zip", {
            MANIFEST_NAME: json.dumps({"id": "t9", "title": "Legacy"}),
            "ui_messages.json": "[]",
            "t9/sub/x.txt": "x",
        })
        dest = tmp_path / "dest"
        dest.mkdir()

        import_task(zip_path, dest)

        assert (dest / "t9" / "ui_messages.json").read_text() == "[]"
        assert (dest / "t9" / "sub" / "x.txt").read_text() == "x"

    def test_empty_id_raises(self, tmp_path: Path):
        zip_path = write_zip(tmp_path / "bad.zip", {MANIFEST_NAME: json.dumps({"id": "", "title": "x"})})
        with pytest.raises(ManifestInvalid):
            import_any(zip_path, tmp_path)

    @pytest.mark.parametrize("task_id", ["../escaped", "..", ".", "/abs", "a/b", "a\\b", "C:evil"])
    def test_unsafe_id_raises_without_writing(self, tmp_path: Path, task_id):
        zip_path = write_zip(tmp_path / "bad.zip", {
            MANIFEST_NAME: json.dumps({"id": task_id}),
            "x/payload.txt": "p",
        })
        dest = tmp_path / "root" / "inner"
        dest.mkdir(parents=True)

        with pytest.raises(ManifestInvalid):
            import_any(zip_path, dest)
        with pytest.raises(ManifestInvalid):
            inspect_ids(zip_path)

        assert snapshot(tmp_path / "root") == {}
        assert not list(tmp_path.rglob("payload.txt"))

    def test_missing_manifest_raises(self, tmp_path: Path):
        zip_path = write_zip(tmp_path / "none.zip", {"t1/a.txt": "a"})
        with pytest.raises(ManifestMissing):
            import_any(zip_path, tmp_path)

    def test_not_a_zip_raises(self, tmp_path: Path):
        bogus = tmp_path / "bogus.zip"
        bogus.write_text("plain text")
        with pytest.raises(ArchiveIOError):
            import_any(bogus, tmp_path)


class TestInspectIds:
    """Tests for reading IDs without extracting."""

    def test_multi_ids(self, tmp_path: Path):
        t1 = make_task(tmp_path / "src", "t1")
        t2 = make_task(tmp_path / "src", "t2")
        zip_path = export_tasks([t1, t2], tmp_path / "m.zip")
        dest = tmp_path / "dest"

        assert inspect_ids(zip_path) == ["t1", "t2"]
        assert not dest.exists()

    def test_single_id(self, tmp_path: Path):
        task = make_task(tmp_path / "src", "solo")
        assert inspect_ids(export_task(task, tmp_path / "s.zip")) == ["solo"]

    def test_manifest_matched_case_insensitively(self, tmp_path: Path):
        zip_path = write_zip(tmp_path / "c.zip", {"ROO-TASK-MANIFEST.JSON": json.dumps({"id": "up"})})
        assert inspect_ids(zip_path) == ["up"]


def test_collision_free_returns_unique_copy_names(tmp_path: Path):
    base = tmp_path / "t1"
    base.mkdir()
    now = datetime(2024, 3, 4, 5, 6, 7)
    first = collision_free(base, now)
    assert first.name == "t1-copy-20240304-050607"
    first.mkdir()
    assert collision_free(base, now).name == "t1-copy-20240304-050607-2"
