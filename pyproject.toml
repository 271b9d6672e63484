[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "umdns"
version = "0.1.0"
description = "A small multicast DNS responder and service-discovery daemon"
requires-python = ">=3.10"
keywords = ["mdns", "dns-sd", "zeroconf", "multicast", "service discovery"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Networking",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
umdns = "umdns.cli:main"

[tool.setuptools]
packages = ["umdns"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
