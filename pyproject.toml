[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "p2pcore"
version = "0.1.0"
description = "Peer-to-peer networking building blocks: multiaddrs, connection gating, identify protocol, observed addresses and ping"
requires-python = ">=3.10"
dependencies = []
keywords = ["p2p", "peer-to-peer", "multiaddr", "identify", "ping", "nat", "networking"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["p2pcore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
