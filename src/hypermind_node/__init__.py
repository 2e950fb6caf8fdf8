"""Hypermind presence node — counts live peers without a central coordinator."""

__version__ = "0.1.0"
