"""Image metadata: the record stored next to every image in the store."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

METADATA_FILE = "metadata.json"
METADATA_FORMAT = "metadata.v1"
RECIPE_FORMAT = "imagefile.v1"
DIGEST_PREFIX = "sha256:"

_DIGEST_RE = re.compile(r"sha256:[0-9a-fA-F]{64}")


class MetadataError(Exception):
    """Raised when metadata cannot be read, parsed, validated or written."""


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_valid_digest(digest: str) -> bool:
    """Return True if ``digest`` has the form ``sha256:<64 hex characters>``."""
    return _DIGEST_RE.fullmatch(digest) is not None


def shorten_digest(digest: str) -> str:
    """Strip the ``sha256:`` prefix and keep at most the first 12 characters."""
    return digest.removeprefix(DIGEST_PREFIX)[:12]


@dataclass
class SourceImage:
    """A parent image referenced by FROM, with its digest at build time."""

    ref: str = ""
    resolved_digest: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"ref": self.ref, "resolved_digest": self.resolved_digest}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceImage:
        return cls(
            ref=_str_field(data, "ref"),
            resolved_digest=_str_field(data, "resolved_digest"),
        )


@dataclass
class Recipe:
    """The Imagefile text an image was built from."""

    source_path: str = ""
    content: str = ""
    format: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "source_path": self.source_path,
            "content": self.content,
            "format": self.format,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recipe:
        return cls(
            source_path=_str_field(data, "source_path"),
            content=_str_field(data, "content"),
            format=_str_field(data, "format"),
        )


@dataclass
class MetadataValidation:
    """The list of problems found while validating metadata."""

    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def message(self) -> str:
        if not self.errors:
            return ""
        return "metadata validation failed: " + "; ".join(self.errors)

    def __str__(self) -> str:
        return self.message


def _str_field(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MetadataError(f"field {key!r} must be a string")
    return value


@dataclass
class ImageMetadata:
    """Complete metadata for a stored image."""

    name: str = ""
    tag: str = ""
    image_digest: str = ""
    created_at: str = ""
    source_images: list[SourceImage] = field(default_factory=list)
    recipe: Recipe = field(default_factory=Recipe)
    files: dict[str, str] = field(default_factory=dict)
    format_version: str = ""

    @classmethod
    def create(cls, name: str, tag: str) -> ImageMetadata:
        """New metadata stamped with the current time and format version."""
        return cls(
            name=name,
            tag=tag,
            created_at=_utc_now(),
            format_version=METADATA_FORMAT,
        )

    def add_source_image(self, ref: str, digest: str) -> None:
        self.source_images.append(SourceImage(ref=ref, resolved_digest=digest))

    def set_recipe(self, source_path: str, content: str) -> None:
        self.recipe = Recipe(source_path=source_path, content=content, format=RECIPE_FORMAT)

    def add_file(self, path: str, source: str) -> None:
        self.files[path] = source

    def validate(self) -> MetadataValidation:
        """Check that every required field is present and well formed."""
        errors: list[str] = []
        required = (
            (self.name, "name is required"),
            (self.tag, "tag is required"),
            (self.image_digest, "image_digest is required"),
            (self.created_at, "created_at is required"),
            (self.format_version, "format_version is required"),
        )
        errors.extend(msg for value, msg in required if not value)

        if self.image_digest and not is_valid_digest(self.image_digest):
            errors.append("image_digest must be in format 'sha256:<hex>'")

        if not self.recipe.content:
            errors.append("recipe.content is required")
        if not self.recipe.format:
            errors.append("recipe.format is required")

        for i, source in enumerate(self.source_images):
            if not source.ref:
                errors.append(f"source_images[{i}].ref is required")
            if not source.resolved_digest:
                errors.append(f"source_images[{i}].resolved_digest is required")
            elif not is_valid_digest(source.resolved_digest):
                errors.append(
                    f"source_images[{i}].resolved_digest must be in format 'sha256:<hex>'"
                )

        return MetadataValidation(errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tag": self.tag,
            "image_digest": self.image_digest,
            "created_at": self.created_at,
            "source_images": [s.to_dict() for s in self.source_images],
            "recipe": self.recipe.to_dict(),
            "files": dict(sorted(self.files.items())),
            "format_version": self.format_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageMetadata:
        """Build metadata from decoded JSON; missing fields become empty."""
        if not isinstance(data, dict):
            raise MetadataError("metadata must be a JSON object")

        sources = data.get("source_images") or []
        if not isinstance(sources, list) or not all(isinstance(s, dict) for s in sources):
            raise MetadataError("field 'source_images' must be a list of objects")

        recipe = data.get("recipe") or {}
        if not isinstance(recipe, dict):
            raise MetadataError("field 'recipe' must be an object")

        files = data.get("files") or {}
        if not isinstance(files, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in files.items()
        ):
            raise MetadataError("field 'files' must map strings to strings")

        return cls(
            name=_str_field(data, "name"),
            tag=_str_field(data, "tag"),
            image_digest=_str_field(data, "image_digest"),
            created_at=_str_field(data, "created_at"),
            source_images=[SourceImage.from_dict(s) for s in sources],
            recipe=Recipe.from_dict(recipe),
            files=dict(files),
            format_version=_str_field(data, "format_version"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def serialize(self, path: str | Path) -> None:
        """Validate and write the metadata as JSON to ``path``."""
        validation = self.validate()
        if not validation.is_valid:
            raise MetadataError(f"cannot serialize invalid metadata: {validation.message}")
        try:
            Path(path).write_text(self.to_json(), encoding="utf-8")
        except OSError as err:
            raise MetadataError(f"failed to write metadata file: {err}") from err

    def save_to_dir(self, image_dir: str | Path) -> None:
        """Write ``metadata.json`` into ``image_dir``, creating it if needed."""
        directory = Path(image_dir)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise MetadataError(f"failed to create image directory: {err}") from err
        self.serialize(directory / METADATA_FILE)

    @property
    def full_name(self) -> str:
        return f"{self.name}:{self.tag}"

    @property
    def short_digest(self) -> str:
        return shorten_digest(self.image_digest)

    @property
    def file_count(self) -> int:
        return len(self.files)

    def has_source_image(self, ref: str) -> bool:
        return any(source.ref == ref for source in self.source_images)

    def source_digest(self, ref: str) -> str:
        """The resolved digest of source ``ref``, or an empty string."""
        return next(
            (s.resolved_digest for s in self.source_images if s.ref == ref), ""
        )

    def recipe_display(self) -> str:
        return (
            f"# Recipe: {self.recipe.source_path}\n"
            f"# Format: {self.recipe.format}\n\n"
            f"{self.recipe.content}"
        )


def _parse(text: str, context: str) -> ImageMetadata:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as err:
        raise MetadataError(f"failed to unmarshal metadata: {err}") from err
    metadata = ImageMetadata.from_dict(data)
    validation = metadata.validate()
    if not validation.is_valid:
        raise MetadataError(f"{context} metadata is invalid: {validation.message}")
    return metadata


def deserialize_metadata(path: str | Path) -> ImageMetadata:
    """Read and validate metadata from a JSON file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as err:
        raise MetadataError(f"failed to read metadata file: {err}") from err
    return _parse(text, "loaded")


def load_metadata_from_dir(image_dir: str | Path) -> ImageMetadata:
    """Read ``metadata.json`` from an image directory."""
    return deserialize_metadata(Path(image_dir) / METADATA_FILE)


def from_json(text: str) -> ImageMetadata:
    """Parse and validate metadata from a JSON string."""
    return _parse(text, "parsed")