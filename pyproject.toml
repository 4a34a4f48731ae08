[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cgroupkit"
version = "0.1.0"
description = "Work with Linux control groups: mode detection, paths, v2 resources, device filters and statistics"
requires-python = ">=3.10"
dependencies = []
keywords = ["cgroups", "cgroup2", "linux", "containers", "resources", "systemd", "ebpf"]
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
    "Topic :: System :: Operating System Kernels :: Linux",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cgroupkit"]

[tool.pytest.ini_options]
addopts = "-ra"
