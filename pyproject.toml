[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rpcgate"
version = "0.1.0"
description = "RPC client with adaptive load balancing, circuit breaking, retry budgets and deadline-aware TCP/TLS transport"
requires-python = ">=3.10"
dependencies = []
keywords = ["rpc", "load-balancer", "circuit-breaker", "retry-budget", "protobuf", "tls"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rpcgate"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
