"""Weaver - orchestration engine for integrating discovered resources into a project."""

__version__ = "0.1.0"
