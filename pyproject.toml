[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shardchain"
version = "0.1.0"
description = "A simulated sharded blockchain with VRF leader election, threshold signatures and sparse Merkle state"
requires-python = ">=3.10"
keywords = ["blockchain", "simulation", "sharding", "merkle", "vrf", "proof-of-authority"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
shardchain = "shardchain.simulation:main"

[tool.hatch.build.targets.wheel]
packages = ["shardchain"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
