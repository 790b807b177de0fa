[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "botrelay"
version = "0.1.0"
description = "Core services for chat-channel bots: login bindings, runtime connections, agent capability discovery and per-bot message orchestration."
requires-python = ">=3.10"
dependencies = []
keywords = ["chatbot", "agent", "orchestration", "messaging", "bot"]
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
    "Topic :: Communications :: Chat",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["botrelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
