[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcptransport"
version = "0.1.0"
description = "Transports for Model Context Protocol servers: stdio, Server-Sent Events and streamable HTTP, with client session management."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "mcp",
    "model-context-protocol",
    "json-rpc",
    "sse",
    "server-sent-events",
    "wsgi",
    "stdio",
    "streamable-http",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mcptransport"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
