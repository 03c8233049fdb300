[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "portalgw"
version = "0.1.0"
description = "Captive-portal gateway helpers: heartbeat, auto-update, task retrieval, restart hand-off and a control client"
requires-python = ">=3.10"
dependencies = []
keywords = ["captive-portal", "gateway", "hotspot", "wifi", "router"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
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

[project.scripts]
wdctl = "portalgw.wdctl:main"

[tool.hatch.build.targets.wheel]
packages = ["portalgw"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
