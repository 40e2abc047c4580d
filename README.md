# kfgimage

`kfgimage` manages configuration images. An image is a directory of files with a
`metadata.json` record that describes them. The package has three modules.

- `kfgimage.metadata` holds the metadata model: `ImageMetadata`, `SourceImage`,
  `Recipe` and `MetadataValidation`. It also has digest helpers
  (`is_valid_digest`, `shorten_digest`) and readers (`deserialize_metadata`,
  `load_metadata_from_dir`, `from_json`).
- `kfgimage.store` holds `ImageStore`, which keeps images under
  `<store>/images/<name>/<tag>`. It also has `resolve_ref` and functions that
  format listings and metadata as text or JSON.
- `kfgimage.materializer` holds `Materializer`. It copies an image's files into a
  workspace and later takes them back out.

## Installation

```
pip install kfgimage
```

Install the `test` extra to run the tests:

```
pip install "kfgimage[test]"
pytest
```

## Metadata

`ImageMetadata.create(name, tag)` stamps the metadata with the current UTC time
and the format version `metadata.v1`. Use `set_recipe(source_path, content)` to
record the Imagefile text. It sets the recipe format to `imagefile.v1`.
`add_file(path, source)` adds an entry to the file manifest, and
`add_source_image(ref, digest)` records a parent image.

`validate()` returns a `MetadataValidation`. Its `errors` list holds every
problem it found, and its `is_valid` and `message` properties summarise them. It
requires a name, a tag, a digest of the form `sha256:<64 hex characters>`, a
creation time, a format version, and recipe content and format.

`serialize(path)` and `save_to_dir(image_dir)` both validate before they write
indented JSON. `save_to_dir` writes `metadata.json`. The readers validate what
they load. Any failure raises `MetadataError`.

`full_name`, `short_digest` (the first 12 hex characters) and `file_count` are
properties.

## Store

```python
from kfgimage.metadata import ImageMetadata
from kfgimage.store import ImageStore, format_list_table, format_inspect_human

meta = ImageMetadata.create("claude-base", "v2")
meta.image_digest = "sha256:" + "a" * 64
meta.set_recipe("./Imagefile", "FROM scratch\nCOPY CLAUDE.md ./\nTAG claude-base:v2")
meta.add_file("CLAUDE.md", "workspace")
meta.save_to_dir("build/candidate")        # the candidate also holds CLAUDE.md

store = ImageStore("/tmp/kfg-store")
store.push_image("build/candidate")        # removes the candidate unless keep_build=True
print(format_list_table(store.list_images()))
print(format_inspect_human(store.inspect_image("claude-base:v2")))
```

If no store directory is given, the store uses `~/.config/kfg/store`.

Images are immutable. Pushing a `name:tag` that the store already holds raises
`ImageExistsError`. `load_image`, `inspect_image` and `remove_image` raise
`ImageNotFoundError` for a missing image. `inspect_image` adds suggestions of
similar names to that error. Other failures raise `StoreError`. A reference
without a tag resolves to `latest`.

`list_images()` skips images whose metadata cannot be read and sorts the rest by
name, then by tag. The formatting functions are:

- `format_list_table`: a tab-separated table, or `No images found`.
- `format_list_json`, `format_inspect_json`: JSON output.
- `format_inspect_human`: a readable summary of an image's metadata.
- `format_recipe_only`: the recipe text alone.
- `format_files_list`: sorted paths, one per line, or `No files`.
- `format_files_list_json`: sorted paths as a JSON array.

`format_time(timestamp, now=None)` renders a timestamp as minutes, hours or days
ago. A timestamp older than a week is shown as a date.

## Workspaces

```python
from kfgimage.materializer import Materializer

mat = Materializer("/tmp/kfg-store")
mat.start("claude-base:v2", "/path/to/workspace", "dev")
# ... work with the materialized files ...
mat.stop("dev")
```

`start` first checks that the instance name uses only letters, digits, dashes and
underscores and that the name is not already in use. It then backs up only the
workspace files that the image's manifest would overwrite. Next it copies the
image's files into the workspace. Last, it records the instance in
`<store>/.workspace/<name>/instance.json`.

`stop` deletes the files that `start` copied and removes any directories that
this leaves empty. It then restores the backup and deletes the instance record.
Stopping an instance that does not exist does nothing. Failures raise
`WorkspaceError`.

Progress messages go to the standard `logging` module.

## What this package does not do

This package does not build images from an Imagefile. A candidate directory and
its `metadata.json` must be prepared by other means before `push_image`. The
package also has no command-line interface. It is used as a library.