[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pcapscenario"
version = "0.1.0"
description = "Follow TCP/TLS 1.3 sessions in IPv6 packet captures and build replayable request/response scenarios"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "pcap",
    "ipv6",
    "tcp",
    "tls13",
    "keylog",
    "iso15118",
    "v2g",
    "scenario",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["pcapscenario"]

[tool.hatch.build.targets.sdist]
include = [
    "pcapscenario",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
