[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agentsandbox"
version = "0.1.0"
description = "Sandbox routing proxy and reconcilers for pools of agent sandboxes"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "sandbox",
    "agents",
    "reconciler",
    "controller",
    "proxy",
    "ext-proc",
    "routing",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["agentsandbox"]

[tool.hatch.build.targets.sdist]
include = ["agentsandbox", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
