[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hyproxy"
version = "0.1.0"
description = "Building blocks for a QUIC-based proxy: ACL rules, Brutal congestion control, wire protocol, packet obfuscation, port hopping and outbound transports."
requires-python = ">=3.10"
keywords = ["proxy", "quic", "acl", "obfuscation", "socks5", "udp", "congestion-control", "port-hopping"]
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "cachetools",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["hyproxy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
