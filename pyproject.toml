[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "addrsym"
version = "0.1.0"
description = "Resolve code addresses to symbol names using ELF, Mach-O and PE/COFF symbol tables."
requires-python = ">=3.10"
dependencies = []
keywords = ["symbolize", "symbols", "elf", "mach-o", "coff", "debug", "addresses", "demangle"]
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
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["addrsym"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
