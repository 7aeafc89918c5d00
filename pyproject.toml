[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gameframework"
version = "0.1.0"
description = "Runtime framework for room-based multiplayer game services: rooms, bets, settlement, idempotent ledger calls and post-settle integrations."
requires-python = ">=3.10"
dependencies = []
keywords = ["game", "game-server", "rooms", "settlement", "idempotency", "framework"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Games/Entertainment",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["gameframework"]

[tool.hatch.build.targets.sdist]
include = ["gameframework", "tests", "README.md"]

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
