"""Workspace materialization: put an image's files into a workspace and take them back out."""

from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from kfgimage.metadata import METADATA_FILE, MetadataError, load_metadata_from_dir
from kfgimage.store import ImageStore, StoreError, copy_directory, copy_file, resolve_ref

WORKSPACE_SUBDIR = ".workspace"
BACKUP_SUBDIR = "backup"
INSTANCE_FILE = "instance.json"

_BACKUP_DATA = "data"
_INSTANCE_NAME_RE = re.compile(r"[A-Za-z0-9_-]+")

_log = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when starting or stopping a workspace instance fails."""


def is_valid_instance_name(name: str) -> bool:
    """Return True if ``name`` holds only ASCII letters, digits, dashes and underscores."""
    return bool(name) and _INSTANCE_NAME_RE.fullmatch(name) is not None


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class InstanceMetadata:
    """Record of an active workspace instance."""

    name: str = ""
    image_ref: str = ""
    workspace_root: str = ""
    started_at: str = ""
    image_digest: str = ""
    materialized_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image_ref": self.image_ref,
            "workspace_root": self.workspace_root,
            "started_at": self.started_at,
            "image_digest": self.image_digest,
            "materialized_paths": list(self.materialized_paths),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstanceMetadata:
        """Build an instance record; a missing path list becomes empty."""
        if not isinstance(data, dict):
            raise WorkspaceError("failed to parse instance metadata: not a JSON object")
        paths = data.get("materialized_paths") or []
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise WorkspaceError(
                "failed to parse instance metadata: materialized_paths must be a list of strings"
            )
        values = {}
        for key in ("name", "image_ref", "workspace_root", "started_at", "image_digest"):
            value = data.get(key)
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise WorkspaceError(
                    f"failed to parse instance metadata: field {key!r} must be a string"
                )
            values[key] = value
        return cls(materialized_paths=list(paths), **values)


def _walk_image(root: Path) -> Iterator[Path]:
    """Entries below ``root`` in lexical order, leaving out the metadata file."""
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if entry.name == METADATA_FILE:
            continue
        yield entry
        if entry.is_dir() and not entry.is_symlink():
            yield from _walk_image(entry)


def _is_directory_empty(directory: Path) -> bool:
    if not directory.exists():
        return True
    with_entries = directory.iterdir()
    return next(with_entries, None) is None


class Materializer:
    """Starts and stops image instances in a workspace, with scoped backups."""

    def __init__(self, store_dir: str | Path | None = None) -> None:
        self._store = ImageStore(store_dir)

    def _instance_dir(self, instance_name: str) -> Path:
        return self._store.store_dir / WORKSPACE_SUBDIR / instance_name

    def start(
        self, image_ref: str, workspace_root: str | Path, instance_name: str
    ) -> None:
        """Materialize an image into the workspace, backing up files it would overwrite."""
        if not image_ref:
            raise WorkspaceError("image reference is required")
        if not workspace_root:
            raise WorkspaceError("workspace root directory is required")
        if not instance_name:
            raise WorkspaceError("instance name is required")
        if not is_valid_instance_name(instance_name):
            raise WorkspaceError(
                "instance name must contain only alphanumeric characters, dashes, and underscores"
            )

        root = Path(workspace_root)
        name, tag = resolve_ref(image_ref)
        try:
            metadata, image_dir = self._store.load_image(image_ref)
        except StoreError as err:
            raise WorkspaceError(f"image {name}:{tag} not found in store: {err}") from err

        instance_dir = self._instance_dir(instance_name)
        instance_file = instance_dir / INSTANCE_FILE
        if instance_file.exists():
            raise WorkspaceError(
                f"instance '{instance_name}' already exists - use a different name "
                "or stop the existing instance first"
            )

        try:
            instance_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise WorkspaceError(f"failed to create instance directory: {err}") from err

        artifact_paths = self.compute_artifact_paths(image_dir)
        conflicting = self.find_conflicting_paths(root, artifact_paths)

        if conflicting:
            _log.info(
                "workspace:start: Creating backup of %d conflicting file(s)...", len(conflicting)
            )
            try:
                count = self.create_scoped_backup(root, instance_name, conflicting)
            except WorkspaceError as err:
                raise WorkspaceError(
                    f"backup creation failed - aborting to preserve data safety: {err}"
                ) from err
            _log.info("workspace:start: Backed up %d conflicting file(s)", count)
        else:
            _log.info("workspace:start: No conflicting files - backup skipped")

        _log.info(
            "workspace:start: Materializing image %s:%s to workspace...",
            metadata.name,
            metadata.tag,
        )
        try:
            materialized = self._materialize_files(image_dir, root)
        except OSError as err:
            raise WorkspaceError(f"materialization failed: {err}") from err

        instance = InstanceMetadata(
            name=instance_name,
            image_ref=image_ref,
            workspace_root=str(workspace_root),
            started_at=_utc_now(),
            image_digest=metadata.image_digest,
            materialized_paths=materialized,
        )
        self.save_instance(instance, instance_file)

        _log.info("workspace:start: Instance '%s' started successfully", instance_name)
        _log.info(
            "workspace:start: Image: %s:%s (digest: %s)",
            metadata.name,
            metadata.tag,
            metadata.short_digest,
        )
        _log.info("workspace:start: Workspace: %s", workspace_root)
        _log.info("workspace:start: Materialized %d file(s)", len(materialized))

    def stop(self, instance_name: str) -> None:
        """Remove materialized files, restore the backup and drop the instance record."""
        if not instance_name:
            raise WorkspaceError("instance name is required")

        instance_dir = self._instance_dir(instance_name)
        try:
            instance = self.load_instance(instance_dir / INSTANCE_FILE)
        except FileNotFoundError:
            _log.info(
                "workspace:stop: Instance '%s' not found - nothing to stop (idempotent success)",
                instance_name,
            )
            return
        except (OSError, WorkspaceError) as err:
            raise WorkspaceError(f"failed to load instance metadata: {err}") from err

        root = Path(instance.workspace_root)
        removed = 0
        for path in instance.materialized_paths:
            if self._remove_materialized_path(root / path):
                _log.info("workspace:stop: Removing materialized file: %s", path)
                removed += 1
            else:
                _log.info("workspace:stop: %s already removed", path)
        _log.info("workspace:stop: Removed %d materialized artifact(s)", removed)

        backup_dir = instance_dir / BACKUP_SUBDIR
        backup_data = backup_dir / _BACKUP_DATA
        if backup_data.exists():
            _log.info("workspace:stop: Restoring workspace from backup...")
            try:
                copy_directory(backup_data, root)
            except OSError as err:
                raise WorkspaceError(f"restore failed: failed to restore backup: {err}") from err
            _log.info("workspace:stop: Workspace restored from backup")
            try:
                shutil.rmtree(backup_dir)
            except OSError as err:
                _log.warning("workspace:stop: Failed to delete backup directory: %s", err)
        else:
            _log.info("workspace:stop: No backup found - cleanup only")

        try:
            shutil.rmtree(instance_dir)
        except FileNotFoundError:
            pass
        except OSError as err:
            raise WorkspaceError(f"failed to cleanup instance directory: {err}") from err

        _log.info("workspace:stop: Instance '%s' stopped and cleaned up", instance_name)

    def _remove_materialized_path(self, full_path: Path) -> bool:
        """Remove a path and any parents it leaves empty; False if it was already gone."""
        if not full_path.exists():
            return False
        try:
            if full_path.is_dir() and not full_path.is_symlink():
                shutil.rmtree(full_path)
            else:
                full_path.unlink()
        except OSError:
            return False
        self._cleanup_empty_parent_dirs(full_path)
        return True

    @staticmethod
    def _cleanup_empty_parent_dirs(full_path: Path) -> None:
        parent = full_path.parent
        while True:
            try:
                if not _is_directory_empty(parent):
                    break
                parent.rmdir()
            except OSError:
                break
            if parent.parent == parent:
                break
            parent = parent.parent

    def create_backup(self, workspace_root: str | Path, instance_name: str) -> None:
        """Copy the whole workspace into the instance's backup directory."""
        backup_dir = self._instance_dir(instance_name) / BACKUP_SUBDIR
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise WorkspaceError(f"failed to create backup directory: {err}") from err
        try:
            copy_directory(workspace_root, backup_dir / _BACKUP_DATA)
        except OSError as err:
            raise WorkspaceError(f"failed to backup workspace: {err}") from err

    def _materialize_files(self, image_dir: Path, workspace_root: Path) -> list[str]:
        workspace_root.mkdir(parents=True, exist_ok=True)
        materialized: list[str] = []
        for entry in _walk_image(image_dir):
            relative = entry.relative_to(image_dir)
            dest = workspace_root / relative
            if entry.is_dir() and not entry.is_symlink():
                dest.mkdir(parents=True, exist_ok=True)
                continue
            copy_file(entry, dest)
            materialized.append(relative.as_posix())
        return materialized

    def save_instance(self, instance: InstanceMetadata, file_path: str | Path) -> None:
        """Write an instance record as indented JSON."""
        try:
            Path(file_path).write_text(
                json.dumps(instance.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as err:
            raise WorkspaceError(f"failed to write instance file: {err}") from err

    def load_instance(self, file_path: str | Path) -> InstanceMetadata:
        """Read an instance record; raises FileNotFoundError if it is missing."""
        text = Path(file_path).read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as err:
            raise WorkspaceError(f"failed to parse instance metadata: {err}") from err
        return InstanceMetadata.from_dict(data)

    def compute_artifact_paths(self, image_dir: str | Path) -> list[str]:
        """The file paths listed in an image's manifest."""
        try:
            metadata = load_metadata_from_dir(image_dir)
        except MetadataError as err:
            raise WorkspaceError(
                f"failed to compute artifact paths: failed to load image metadata: {err}"
            ) from err
        return list(metadata.files)

    def find_conflicting_paths(
        self, workspace_root: str | Path, artifact_paths: Iterable[str]
    ) -> list[str]:
        """The artifact paths that already exist in the workspace."""
        root = Path(workspace_root)
        return [path for path in artifact_paths if (root / path).exists()]

    def create_scoped_backup(
        self, workspace_root: str | Path, instance_name: str, paths: list[str]
    ) -> int:
        """Back up only ``paths``, keeping their layout; returns how many were saved."""
        if not paths:
            return 0
        backup_data = self._instance_dir(instance_name) / BACKUP_SUBDIR / _BACKUP_DATA
        try:
            backup_data.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise WorkspaceError(f"failed to create backup data directory: {err}") from err

        root = Path(workspace_root)
        for path in paths:
            try:
                self._backup_path(root, path, backup_data)
            except OSError as err:
                raise WorkspaceError(f"failed to backup path {path}: {err}") from err
            _log.info("workspace:start: Backing up %s (conflicts with image artifact)", path)
        return len(paths)

    @staticmethod
    def _backup_path(root: Path, relative: str, backup_data: Path) -> None:
        src = root / relative
        dest = backup_data / relative
        if src.is_dir():
            copy_directory(src, dest)
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        copy_file(src, dest)