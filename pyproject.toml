[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "canutils"
version = "0.1.0"
description = "Command-line tools for SocketCAN: sequence testing, ISO-TP send/receive/perf and gateway rule management"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "socketcan", "isotp", "iso15765", "cangw", "netlink", "automotive"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Networking",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cansequence = "canutils.cansequence:main"
isotpperf = "canutils.isotpperf:main"
isotprecv = "canutils.isotprecv:main"
isotpsend = "canutils.isotpsend:main"
cangw = "canutils.cangw:main"

[tool.hatch.build.targets.wheel]
packages = ["canutils"]

[tool.hatch.build.targets.sdist]
include = ["canutils", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
