[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sqengine"
version = "0.1.0"
description = "Multiplexing SNMP query engine: clients send msgpack requests over TCP, and the engine batches and throttles SNMP gets and table walks."
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = ["snmp", "monitoring", "msgpack", "getbulk", "asyncio", "network"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
sqengine = "sqengine.server:main"

[tool.hatch.build.targets.wheel]
packages = ["sqengine"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
