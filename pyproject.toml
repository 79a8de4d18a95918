[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "podnet"
version = "0.1.0"
description = "Container network setup over Linux rtnetlink with macvlan, ipvlan and plugin drivers"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "containers",
    "networking",
    "netlink",
    "rtnetlink",
    "macvlan",
    "ipvlan",
    "network-namespace",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
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

[tool.hatch.build.targets.wheel]
packages = ["podnet"]

[tool.hatch.build.targets.sdist]
include = ["podnet", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
