[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rmcast"
version = "0.1.0"
description = "Building blocks for reliable multicast: circular buffers, publisher bookkeeping, TCP control connections and wire formats"
requires-python = ">=3.10"
keywords = ["multicast", "reliable", "publish-subscribe", "networking", "circular-buffer"]
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
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rmcast"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
