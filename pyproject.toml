[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cgroupscrape"
version = "0.1.0"
description = "Prometheus-style exporter of per-cgroup CPU, memory and process metrics for cgroup v1 and v2"
requires-python = ">=3.10"
dependencies = []
keywords = ["cgroup", "prometheus", "exporter", "metrics", "slurm", "monitoring"]
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
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cgroupscrape = "cgroupscrape.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["cgroupscrape"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
