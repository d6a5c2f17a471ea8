"""Demote processes running at an unwanted CPU priority."""

__version__ = "0.1.0"
