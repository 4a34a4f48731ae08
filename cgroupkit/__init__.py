"""Tools for inspecting and managing Linux control groups (v1 helpers and the v2 unified hierarchy)."""

__version__ = "0.1.0"