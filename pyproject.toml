[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hadaemon"
version = "0.1.0"
description = "High-availability cluster daemon core: logging, host weights, state-file lock manager and script service"
requires-python = ">=3.10"
dependencies = []
keywords = ["high-availability", "cluster", "daemon", "lock-manager", "fault-insertion"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
hadaemon = "hadaemon.daemon:main"

[tool.hatch.build.targets.wheel]
packages = ["hadaemon"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
