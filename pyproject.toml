[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpccni"
version = "0.1.0"
description = "Configuration parsing and traffic redirection rules for ECS Service Connect and VPC branch ENI container networking"
requires-python = ">=3.10"
dependencies = []
keywords = ["cni", "container", "networking", "iptables", "tproxy", "vpc", "eni", "service-connect"]
classifiers = [
    "Development Status :: 4 - Beta",
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
packages = ["vpccni"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
