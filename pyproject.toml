[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "anipler"
version = "0.1.0"
description = "Track torrents on a qBittorrent seedbox, relay finished downloads with rsync and pull them home."
requires-python = ">=3.11"
keywords = ["qbittorrent", "seedbox", "rsync", "telegram", "torrent"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Framework :: AsyncIO",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]
dependencies = [
    "httpx",
    "aiosqlite",
    "platformdirs",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "respx",
]

[project.scripts]
anipler-daemon = "anipler.daemon:main"
anipler-puller = "anipler.puller:main"

[tool.hatch.build.targets.wheel]
packages = ["anipler"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
