import json
from pathlib import Path

import pytest

from kfgimage.materializer import (
    InstanceMetadata,
    Materializer,
    WorkspaceError,
    is_valid_instance_name,
)
from kfgimage.metadata import ImageMetadata
from kfgimage.store import ImageStore


def _push(tmp_path: Path, store: ImageStore, name: str, digest_char: str, files: dict) -> None:
    candidate = tmp_path / f"candidate-{name}"
    candidate.mkdir(parents=True)
    metadata = ImageMetadata.create(name, "v1")
    metadata.image_digest = "sha256:" + digest_char * 64
    metadata.set_recipe("./Imagefile", f"FROM scratch\nTAG {name}:v1")
    for rel, content in files.items():
        metadata.add_file(rel, "workspace")
        target = candidate / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    metadata.save_to_dir(candidate)
    store.push_image(candidate, False)


@pytest.fixture
def env(tmp_path):
    store_dir = tmp_path / "store"
    store = ImageStore(store_dir)
    store.initialize()
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return tmp_path, store_dir, store, workspace


def test_start_empty_workspace(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "start-test", "f", {"test.txt": "test content"})
    Materializer(store_dir).start("start-test:v1", workspace, "test-instance")
    assert (workspace / "test.txt").read_text() == "test content"
    assert (store_dir / ".workspace" / "test-instance" / "instance.json").is_file()
    assert not (store_dir / ".workspace" / "test-instance" / "backup").exists()


def test_start_with_existing_files_creates_scoped_backup(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "backup-test", "0", {"new.txt": "new content"})
    (workspace / "new.txt").write_text("existing content")
    (workspace / "unrelated.txt").write_text("unrelated")
    Materializer(store_dir).start("backup-test:v1", workspace, "backup-instance")
    data = store_dir / ".workspace" / "backup-instance" / "backup" / "data"
    assert (data / "new.txt").read_text() == "existing content"
    assert not (data / "unrelated.txt").exists()
    assert (workspace / "new.txt").read_text() == "new content"


def test_stop_with_backup_restores(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "stop-test", "1", {"original.txt": "image content"})
    (workspace / "original.txt").write_text("original content")
    (workspace / "unrelated.txt").write_text("unrelated content")
    m = Materializer(store_dir)
    m.start("stop-test:v1", workspace, "stop-instance")
    assert (workspace / "original.txt").read_text() == "image content"
    m.stop("stop-instance")
    assert (workspace / "original.txt").read_text() == "original content"
    assert (workspace / "unrelated.txt").read_text() == "unrelated content"
    assert not (store_dir / ".workspace" / "stop-instance").exists()


def test_stop_nonexistent_instance_is_noop(tmp_path):
    store_dir = tmp_path / "store"
    assert Materializer(store_dir).stop("nonexistent-instance") is None
    assert not (store_dir / ".workspace" / "nonexistent-instance").exists()


def test_stop_requires_name(tmp_path):
    with pytest.raises(WorkspaceError, match="instance name is required"):
        Materializer(tmp_path).stop("")


def test_duplicate_instance_name(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "duplicate-test", "2", {})
    m = Materializer(store_dir)
    m.start("duplicate-test:v1", workspace, "duplicate-name")
    with pytest.raises(WorkspaceError, match="already exists"):
        m.start("duplicate-test:v1", workspace, "duplicate-name")


def test_missing_image_ref(env):
    _, store_dir, _, workspace = env
    with pytest.raises(WorkspaceError, match="not found"):
        Materializer(store_dir).start("nonexistent:v1", workspace, "test-instance")


@pytest.mark.parametrize(
    "ref, root, name, message",
    [
        ("test:v1", "ws", "", "instance name is required"),
        ("", "ws", "inst", "image reference is required"),
        ("test:v1", "", "inst", "workspace root directory is required"),
        ("test:v1", "ws", "bad name!", "alphanumeric"),
    ],
)
def test_start_argument_validation(tmp_path, ref, root, name, message):
    with pytest.raises(WorkspaceError, match=message):
        Materializer(tmp_path).start(ref, root, name)


@pytest.mark.parametrize(
    "name, expected",
    [("abc", True), ("a-b_C9", True), ("", False), ("a b", False), ("a/b", False), ("é", False)],
)
def test_is_valid_instance_name(name, expected):
    assert is_valid_instance_name(name) is expected


def test_instance_metadata_round_trip(tmp_path):
    m = Materializer(tmp_path)
    instance = InstanceMetadata(
        name="test-instance",
        image_ref="test:v1",
        workspace_root="/workspace",
        started_at="2024-01-01T00:00:00Z",
        image_digest="sha256:abcdef",
        materialized_paths=["CLAUDE.md", ".pi/config.json"],
    )
    path = tmp_path / "instance.json"
    m.save_instance(instance, path)
    loaded = m.load_instance(path)
    assert loaded.materialized_paths == ["CLAUDE.md", ".pi/config.json"]
    assert loaded == instance


def test_instance_metadata_backward_compatibility(tmp_path):
    path = tmp_path / "instance.json"
    path.write_text(
        '{"name":"old-instance","image_ref":"old:v1","workspace_root":"/workspace",'
        '"started_at":"2024-01-01T00:00:00Z","image_digest":"sha256:old"}'
    )
    loaded = Materializer(tmp_path).load_instance(path)
    assert loaded.materialized_paths == []
    assert loaded.name == "old-instance"


def test_instance_empty_paths_serialize_as_array(tmp_path):
    path = tmp_path / "instance.json"
    Materializer(tmp_path).save_instance(
        InstanceMetadata(name="empty-paths-instance", image_ref="test:v1"), path
    )
    assert '"materialized_paths": []' in path.read_text()


def test_load_instance_errors(tmp_path):
    m = Materializer(tmp_path)
    with pytest.raises(FileNotFoundError):
        m.load_instance(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("not json")
    with pytest.raises(WorkspaceError):
        m.load_instance(bad)


def test_instance_from_dict_to_dict():
    data = {
        "name": "n",
        "image_ref": "i:v1",
        "workspace_root": "/w",
        "started_at": "2024-01-01T00:00:00Z",
        "image_digest": "sha256:x",
        "materialized_paths": ["a"],
    }
    assert InstanceMetadata.from_dict(data).to_dict() == data


def test_compute_artifact_paths(env):
    tmp_path, store_dir, store, _ = env
    _push(
        tmp_path,
        store,
        "artifact-path-test",
        "a",
        {"CLAUDE.md": "c", ".pi/config.json": "p", "README.md": "r"},
    )
    _, image_dir = store.load_image("artifact-path-test:v1")
    paths = Materializer(store_dir).compute_artifact_paths(image_dir)
    assert sorted(paths) == sorted(["CLAUDE.md", ".pi/config.json", "README.md"])


def test_find_conflicting_paths_partial(tmp_path):
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / "CLAUDE.md").write_text("existing claude")
    (workspace / "README.md").write_text("existing readme")
    conflicts = Materializer(tmp_path).find_conflicting_paths(
        workspace, ["CLAUDE.md", ".pi/config.json", "README.md"]
    )
    assert conflicts == ["CLAUDE.md", "README.md"]


def test_scoped_backup_preserves_structure(env):
    _, store_dir, _, workspace = env
    (workspace / ".pi").mkdir()
    (workspace / ".pi" / "config.json").write_text("existing config")
    count = Materializer(store_dir).create_scoped_backup(
        workspace, "test-backup", [".pi/config.json"]
    )
    assert count == 1
    backed = store_dir / ".workspace" / "test-backup" / "backup" / "data" / ".pi" / "config.json"
    assert backed.read_text() == "existing config"


def test_backup_skipped_when_no_conflicts(env):
    _, store_dir, _, workspace = env
    (workspace / "unrelated.txt").write_text("unrelated content")
    count = Materializer(store_dir).create_scoped_backup(workspace, "test-skip-backup", [])
    assert count == 0
    assert not (store_dir / ".workspace" / "test-skip-backup" / "backup" / "data").exists()


def test_create_backup_copies_workspace(env):
    _, store_dir, _, workspace = env
    (workspace / "a.txt").write_text("alpha")
    Materializer(store_dir).create_backup(workspace, "full")
    data = store_dir / ".workspace" / "full" / "backup" / "data"
    assert (data / "a.txt").read_text() == "alpha"


def _load(store_dir: Path, name: str) -> InstanceMetadata:
    return Materializer(store_dir).load_instance(
        store_dir / ".workspace" / name / "instance.json"
    )


def test_materialized_paths_tracking(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "tracking-test", "b", {"CLAUDE.md": "c", "GEMINI.md": "g"})
    Materializer(store_dir).start("tracking-test:v1", workspace, "tracking-instance")
    instance = _load(store_dir, "tracking-instance")
    assert instance.materialized_paths == ["CLAUDE.md", "GEMINI.md"]
    assert instance.image_ref == "tracking-test:v1"
    assert instance.image_digest == "sha256:" + "b" * 64


def test_nested_path_tracking(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "nested-test", "c", {".pi/subdir/file.txt": "nested content"})
    Materializer(store_dir).start("nested-test:v1", workspace, "nested-instance")
    assert _load(store_dir, "nested-instance").materialized_paths == [".pi/subdir/file.txt"]


def test_directories_not_tracked(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "file-vs-dir-test", "d", {".pi/config.json": "config"})
    Materializer(store_dir).start("file-vs-dir-test:v1", workspace, "file-vs-dir-instance")
    assert _load(store_dir, "file-vs-dir-instance").materialized_paths == [".pi/config.json"]


def test_scoped_cleanup_removes_only_materialized(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "cleanup-test", "e", {"CLAUDE.md": "claude content"})
    (workspace / "README.md").write_text("unrelated readme")
    m = Materializer(store_dir)
    m.start("cleanup-test:v1", workspace, "cleanup-instance")
    m.stop("cleanup-instance")
    assert not (workspace / "CLAUDE.md").exists()
    assert (workspace / "README.md").read_text() == "unrelated readme"


def test_cleanup_idempotency(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "idempotent-test", "f", {"test.txt": "test content"})
    m = Materializer(store_dir)
    m.start("idempotent-test:v1", workspace, "idempotent-instance")
    (workspace / "test.txt").unlink()
    m.stop("idempotent-instance")
    assert not (store_dir / ".workspace" / "idempotent-instance").exists()


def test_empty_directory_removed_after_cleanup(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "empty-dir-test", "1", {".pi/config.json": "config"})
    m = Materializer(store_dir)
    m.start("empty-dir-test:v1", workspace, "empty-dir-instance")
    m.stop("empty-dir-instance")
    assert not (workspace / ".pi").exists()


def test_preserve_non_materialized_files(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "preserve-test", "2", {".pi/config.json": "config"})
    (workspace / ".pi").mkdir()
    (workspace / ".pi" / "notes.txt").write_text("user notes")
    m = Materializer(store_dir)
    m.start("preserve-test:v1", workspace, "preserve-instance")
    m.stop("preserve-instance")
    assert not (workspace / ".pi" / "config.json").exists()
    assert (workspace / ".pi" / "notes.txt").read_text() == "user notes"


def test_repeated_start_backs_up_current_content(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "repeat-test", "3", {"file.txt": "image content"})
    (workspace / "file.txt").write_text("original content")
    m = Materializer(store_dir)
    m.start("repeat-test:v1", workspace, "repeat-instance-1")
    m.stop("repeat-instance-1")
    assert (workspace / "file.txt").read_text() == "original content"

    (workspace / "file.txt").write_text("modified content")
    m.start("repeat-test:v1", workspace, "repeat-instance-2")
    backed = store_dir / ".workspace" / "repeat-instance-2" / "backup" / "data" / "file.txt"
    assert backed.read_text() == "modified content"
    m.stop("repeat-instance-2")
    assert (workspace / "file.txt").read_text() == "modified content"


def test_instance_file_is_json(env):
    tmp_path, store_dir, store, workspace = env
    _push(tmp_path, store, "json-test", "4", {"x.txt": "x"})
    Materializer(store_dir).start("json-test:v1", workspace, "json-instance")
    raw = json.loads((store_dir / ".workspace" / "json-instance" / "instance.json").read_text())
    assert raw["name"] == "json-instance"
    assert raw["workspace_root"] == str(workspace)
    assert raw["started_at"].endswith("Z")