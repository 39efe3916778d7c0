[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "riftnode"
version = "0.1.0"
description = "Mesh VPN node pieces: TUN settings and routes, NAT hole punching, beacon relay client, peer connection state and a control socket"
requires-python = ">=3.10"
keywords = ["vpn", "mesh", "nat", "hole-punching", "relay", "tun", "ipc"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = []

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
rift-node = "riftnode.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["riftnode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
