"""Orchestration core: domain logic and its ports."""
