[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "riverqueue"
version = "0.1.0"
description = "Job queue client core: configuration, insert options, event subscriptions and status monitoring"
requires-python = ">=3.10"
dependencies = []
keywords = ["job queue", "background jobs", "workers", "events", "subscriptions"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["riverqueue"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
