[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aprstation"
version = "0.1.0"
description = "APRS station toolkit: SQLite station and message store, Bluetooth TNC discovery, self-signed TLS and outbound webhooks"
requires-python = ">=3.10"
keywords = ["aprs", "ham radio", "amateur radio", "tnc", "bluetooth", "igate", "webhook", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Ham Radio",
]
dependencies = [
    "cryptography",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["aprstation"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
