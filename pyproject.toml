[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "goddess"
version = "0.1.0"
description = "Service gateway building blocks: backend targets, discovery watching, weighted node picking and reloadable gateway configuration"
requires-python = ">=3.10"
keywords = ["gateway", "proxy", "service-discovery", "load-balancing", "configuration"]
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
    "Topic :: Internet :: Proxy Servers",
]
dependencies = [
    "pyyaml",
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
goddess = "goddess.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["goddess"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
