"""The image store: immutable images kept under ``<store>/images/<name>/<tag>``."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

from kfgimage.metadata import (
    ImageMetadata,
    MetadataError,
    load_metadata_from_dir,
    shorten_digest,
)

DEFAULT_STORE_DIR = "~/.config/kfg/store"
IMAGES_SUBDIR = "images"
METADATA_FILE = "metadata.json"

_FALLBACK_STORE_DIR = ".nixai/store"

_log = logging.getLogger(__name__)

_RFC3339 = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


class StoreError(Exception):
    """Raised when a store operation fails."""


class ImageNotFoundError(StoreError):
    """Raised when a referenced image is not in the store."""


class ImageExistsError(StoreError):
    """Raised when pushing an image whose name and tag are already stored."""


@dataclass
class ImageInfo:
    """Summary of a stored image, as shown by listings."""

    name: str
    tag: str
    digest: str
    short_digest: str
    created_at: str
    file_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tag": self.tag,
            "digest": self.digest,
            "short_digest": self.short_digest,
            "created_at": self.created_at,
            "file_count": self.file_count,
        }


def _expand_store_dir(store_dir: str) -> Path:
    if not store_dir.startswith("~"):
        return Path(store_dir)
    try:
        home = Path.home()
    except (RuntimeError, KeyError):
        return Path(_FALLBACK_STORE_DIR)
    rest = store_dir[1:].lstrip("/")
    return Path(os.path.normpath(home / rest)) if rest else home


def resolve_ref(ref: str) -> tuple[str, str]:
    """Split ``name:tag`` into its parts; the tag defaults to ``latest``."""
    if ":" in ref:
        name, tag = ref.split(":", 1)
        if tag == "sha256" or tag.startswith("sha256:"):
            return ref, "latest"
        return name, tag
    return ref, "latest"


class ImageStore:
    """Stores, lists, inspects and removes built images."""

    def __init__(self, store_dir: str | Path | None = None) -> None:
        self._store_dir = _expand_store_dir(str(store_dir) if store_dir else DEFAULT_STORE_DIR)

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    @property
    def images_dir(self) -> Path:
        return self._store_dir / IMAGES_SUBDIR

    def initialize(self) -> None:
        """Create the store directory layout if it is missing."""
        try:
            self.images_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise StoreError(f"failed to create images directory: {err}") from err

    def image_dir(self, name: str, tag: str) -> Path:
        return self.images_dir / name / tag

    def push_image(self, candidate_dir: str | Path, keep_build: bool = False) -> None:
        """Copy a built candidate into the store; stored images are immutable."""
        self.initialize()
        candidate = Path(candidate_dir)
        try:
            metadata = load_metadata_from_dir(candidate)
        except MetadataError as err:
            raise StoreError(f"failed to load candidate metadata: {err}") from err

        validation = metadata.validate()
        if not validation.is_valid:
            raise StoreError(f"candidate metadata is invalid: {validation.message}")

        target = self.image_dir(metadata.name, metadata.tag)
        if target.exists():
            raise ImageExistsError(
                f"image {metadata.name}:{metadata.tag} already exists in store "
                "(images are immutable)"
            )

        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise StoreError(f"failed to create image directory: {err}") from err

        try:
            copy_directory(candidate, target)
        except OSError as err:
            shutil.rmtree(target, ignore_errors=True)
            raise StoreError(f"failed to copy image files: {err}") from err

        if not keep_build:
            try:
                shutil.rmtree(candidate)
            except OSError as err:
                _log.warning("store:push: Failed to clean up build directory: %s", err)

    def load_image(self, ref: str) -> tuple[ImageMetadata, Path]:
        """Return the metadata and directory of the image named by ``ref``."""
        name, tag = resolve_ref(ref)
        target = self.image_dir(name, tag)
        if not target.exists():
            raise ImageNotFoundError(f"image {name}:{tag} not found in store")
        try:
            metadata = load_metadata_from_dir(target)
        except MetadataError as err:
            raise StoreError(f"failed to load image metadata: {err}") from err
        return metadata, target

    def list_images(self) -> list[ImageInfo]:
        """All images with readable metadata, sorted by name then tag."""
        images_dir = self.images_dir
        if not images_dir.exists():
            return []
        try:
            name_dirs = [p for p in images_dir.iterdir() if p.is_dir()]
        except OSError as err:
            raise StoreError(f"failed to read images directory: {err}") from err

        images: list[ImageInfo] = []
        for name_dir in name_dirs:
            try:
                tag_dirs = [p for p in name_dir.iterdir() if p.is_dir()]
            except OSError:
                continue
            for tag_dir in tag_dirs:
                try:
                    metadata = load_metadata_from_dir(tag_dir)
                except MetadataError:
                    continue
                images.append(
                    ImageInfo(
                        name=metadata.name,
                        tag=metadata.tag,
                        digest=metadata.image_digest,
                        short_digest=shorten_digest(metadata.image_digest),
                        created_at=metadata.created_at,
                        file_count=metadata.file_count,
                    )
                )
        images.sort(key=lambda info: (info.name, info.tag))
        return images

    def inspect_image(self, ref: str) -> ImageMetadata:
        """Return the full metadata of an image, suggesting near matches if missing."""
        name, tag = resolve_ref(ref)
        target = self.image_dir(name, tag)
        if not target.exists():
            suggestions = self._find_similar_images(name)
            if suggestions:
                raise ImageNotFoundError(
                    f"image {name}:{tag} not found. Similar images: {', '.join(suggestions)}"
                )
            raise ImageNotFoundError(f"image {name}:{tag} not found in store")
        try:
            return load_metadata_from_dir(target)
        except MetadataError as err:
            raise StoreError(f"failed to load image metadata: {err}") from err

    def remove_image(self, ref: str) -> None:
        """Delete an image, and its name directory once no tags remain."""
        name, tag = resolve_ref(ref)
        target = self.image_dir(name, tag)
        if not target.exists():
            raise ImageNotFoundError(f"image {name}:{tag} not found in store")
        try:
            shutil.rmtree(target)
        except OSError as err:
            raise StoreError(f"failed to remove image: {err}") from err

        name_dir = self.images_dir / name
        try:
            if not any(name_dir.iterdir()):
                name_dir.rmdir()
        except OSError:
            pass

    def _find_similar_images(self, name: str) -> list[str]:
        images_dir = self.images_dir
        try:
            name_dirs = [p for p in images_dir.iterdir() if p.is_dir()]
        except OSError:
            return []
        suggestions: list[str] = []
        for name_dir in name_dirs:
            found = name_dir.name
            if name in found or found in name:
                try:
                    suggestions.extend(
                        f"{found}:{tag_dir.name}"
                        for tag_dir in name_dir.iterdir()
                        if tag_dir.is_dir()
                    )
                except OSError:
                    continue
        return sorted(suggestions)


def copy_directory(src: str | Path, dst: str | Path) -> None:
    """Recursively copy the contents of ``src`` into ``dst``."""
    src_path, dst_path = Path(src), Path(dst)
    mode = stat.S_IMODE(src_path.stat().st_mode)
    if not dst_path.exists():
        dst_path.mkdir(parents=True)
        os.chmod(dst_path, mode)
    with os.scandir(src_path) as entries:
        for entry in entries:
            target = dst_path / entry.name
            if entry.is_dir(follow_symlinks=False):
                copy_directory(entry.path, target)
            else:
                copy_file(entry.path, target)


def copy_file(src: str | Path, dst: str | Path) -> None:
    """Copy one file's bytes; a newly created file gets the source's mode."""
    src_path, dst_path = Path(src), Path(dst)
    data = src_path.read_bytes()
    mode = stat.S_IMODE(src_path.stat().st_mode)
    created = not dst_path.exists()
    dst_path.write_bytes(data)
    if created:
        os.chmod(dst_path, mode)


def _parse_rfc3339(timestamp: str) -> datetime | None:
    match = _RFC3339.fullmatch(timestamp)
    if match is None:
        return None
    base, fraction, zone = match.groups()
    try:
        moment = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    if fraction:
        moment = moment.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return moment.replace(tzinfo=tz)


def format_time(timestamp: str, now: datetime | None = None) -> str:
    """Render an RFC 3339 timestamp relative to ``now``, or as a date after a week."""
    moment = _parse_rfc3339(timestamp)
    if moment is None:
        return timestamp
    current = now if now is not None else datetime.now(timezone.utc)
    seconds = (current - moment).total_seconds()
    if seconds < 3600:
        return f"{int(seconds / 60)} minutes ago"
    if seconds < 24 * 3600:
        return f"{int(seconds / 3600)} hours ago"
    if seconds < 7 * 24 * 3600:
        return f"{int(seconds / 3600 / 24)} days ago"
    return moment.strftime("%Y-%m-%d")


def format_list_table(images: Iterable[ImageInfo]) -> str:
    """Tab-separated table of images, or ``No images found``."""
    rows = [
        f"{img.name}\t{img.tag}\t{img.short_digest}\t{format_time(img.created_at)}"
        f"\t{img.file_count}\n"
        for img in images
    ]
    if not rows:
        return "No images found"
    return "NAME\tTAG\tDIGEST\tCREATED\tFILES\n" + "".join(rows)


def format_list_json(images: Iterable[ImageInfo]) -> str:
    return json.dumps([img.to_dict() for img in images], indent=2, ensure_ascii=False)


def format_inspect_json(metadata: ImageMetadata) -> str:
    return metadata.to_json()


def format_inspect_human(metadata: ImageMetadata) -> str:
    """Readable summary of an image's metadata."""
    lines = [
        f"Name: {metadata.name}\n",
        f"Tag: {metadata.tag}\n",
        f"Digest: {metadata.image_digest}\n",
        f"Created: {format_time(metadata.created_at)}\n",
        f"Files: {metadata.file_count}\n",
    ]
    if metadata.source_images:
        lines.append("\nSource Images:\n")
        lines.extend(
            f"  - {source.ref} (resolved: {source.resolved_digest})\n"
            for source in metadata.source_images
        )
    return "".join(lines)


def format_recipe_only(metadata: ImageMetadata) -> str:
    return metadata.recipe.content


def format_files_list(metadata: ImageMetadata) -> str:
    """Sorted file paths, one per line, or ``No files``."""
    if not metadata.files:
        return "No files"
    return "\n".join(sorted(metadata.files))


def format_files_list_json(metadata: ImageMetadata) -> str:
    """Sorted file paths as a JSON array."""
    if not metadata.files:
        return "[]"
    return json.dumps(sorted(metadata.files), indent=2, ensure_ascii=False)