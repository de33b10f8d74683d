[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fcvmm"
version = "0.1.0"
description = "Launch Firecracker microVMs and drive them over their HTTP API socket, synchronously or with asyncio"
requires-python = ">=3.10"
dependencies = []
keywords = ["firecracker", "microvm", "virtualization", "vmm", "jailer", "unix-socket"]
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
    "Framework :: AsyncIO",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
fcvmm = "fcvmm.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["fcvmm"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
