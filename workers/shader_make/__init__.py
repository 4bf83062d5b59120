"""
shader_make — Batch build orchestrator for shader permutations.

Reads a declarative shader list, expands macro permutations, skips
permutations whose outputs are newer than their include tree, compiles
the rest on a worker pool, and optionally packs every permutation of a
shader into one container file.
"""

__version__ = "1.0.0"
PACKAGE_NAME = "shader_make"
SCHEMA_VERSION = "1.0"
