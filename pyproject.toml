[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ecudiag"
version = "0.99.0"
description = "Hardware abstraction for ECU diagnostics: CAN and ISO-TP channels over SLCAN, SocketCAN and simulated adapters"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "iso-tp", "slcan", "socketcan", "diagnostics", "ecu", "obd"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ecudiag"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
