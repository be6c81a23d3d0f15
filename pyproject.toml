[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rtmpkit"
version = "0.1.0"
description = "RTMP chunk streaming, handshake and relay building blocks, with a small HLS conversion controller"
requires-python = ">=3.10"
dependencies = []
keywords = ["rtmp", "streaming", "chunk", "handshake", "relay", "hls", "flv", "video"]
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
    "Topic :: Multimedia :: Video",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rtmpkit-hls = "rtmpkit.hls:main"

[tool.hatch.build.targets.wheel]
packages = ["rtmpkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
