[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "polyresearch"
version = "0.4.1"
description = "GitHub CLI plumbing, request throttling and hardware probing for distributed autoresearch"
requires-python = ">=3.10"
keywords = ["ai", "research", "distributed", "agents", "experiments", "github"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "psutil",
    "portalocker",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["polyresearch"]

[tool.pytest.ini_options]
addopts = "-ra"
