[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "krill"
version = "0.1.0"
description = "Agent runtime building blocks: cron scheduling, session persistence, skill registry, sandboxed execution and lightweight telemetry."
requires-python = ">=3.10"
dependencies = []
keywords = ["agents", "scheduler", "cron", "sessions", "sandbox", "telemetry", "skills"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["krill"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
