[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "iavl"
version = "0.1.0"
description = "Versioned AVL tree building blocks: node encoding and hashing, key formats and tree traversal"
requires-python = ">=3.10"
dependencies = []
keywords = ["avl", "merkle", "tree", "versioned", "key-value", "database"]
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
    "Topic :: Database",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["iavl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
