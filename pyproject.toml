[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "apaxbank"
version = "0.1.0"
description = "A small replicated bank ledger kept consistent with a modified Paxos protocol"
requires-python = ">=3.10"
dependencies = []
keywords = ["paxos", "consensus", "replication", "distributed", "ledger"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
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

[project.scripts]
apaxbank = "apaxbank.driver:main"

[tool.hatch.build.targets.wheel]
packages = ["apaxbank"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
