[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcsresolver"
version = "0.1.0"
description = "In-memory DNS record resolution for services exported across multiple clusters"
requires-python = ">=3.10"
dependencies = []
keywords = ["dns", "multi-cluster", "service-discovery", "kubernetes", "endpointslice", "serviceimport"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mcsresolver"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 120
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
