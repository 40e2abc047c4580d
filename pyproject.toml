[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kfgimage"
version = "0.1.0"
description = "Configuration image store, metadata and workspace materialization"
requires-python = ">=3.10"
dependencies = []
keywords = ["image", "store", "workspace", "configuration", "metadata"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kfgimage"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
