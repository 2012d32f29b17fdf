[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "yuki"
version = "0.0.1"
description = "Networking building blocks for a light Bitcoin node: P2P wire messages, DNS seeding, peer accounting and RPC helpers"
requires-python = ">=3.10"
keywords = ["bitcoin", "p2p", "network", "peer-to-peer", "dns-seed", "light-client"]
classifiers = [
    "Development Status :: 2 - Pre-Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Networking",
]
dependencies = [
    "httpx>=0.24",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
    "respx>=0.20",
]

[tool.hatch.build.targets.wheel]
packages = ["yuki"]

[tool.hatch.build.targets.sdist]
include = ["yuki", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_redundant_casts = true
