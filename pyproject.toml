[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hyrelay"
version = "0.1.0"
description = "Configuration, authentication, traffic accounting and local TCP/UDP/SOCKS5 front-ends for a proxy tunnel"
requires-python = ">=3.10"
keywords = [
    "proxy",
    "relay",
    "socks5",
    "udp",
    "tcp",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "requests",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["hyrelay"]

[tool.hatch.build.targets.sdist]
include = [
    "hyrelay",
    "tests",
    "pyproject.toml",
    "README.md",
]

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
