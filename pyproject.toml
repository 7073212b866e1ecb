[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ubiblk"
version = "0.2.0"
description = "Block device layers: file-backed I/O, XTS-AES encryption and lazily fetched stripes with on-disk metadata"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "block-device",
    "storage",
    "xts",
    "encryption",
    "copy-on-read",
    "disk-image",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: Security :: Cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
ubiblk-replay-log = "ubiblk.replay:main"

[tool.hatch.build.targets.wheel]
packages = ["ubiblk"]

[tool.hatch.build.targets.sdist]
include = ["ubiblk", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
