"""Cheapmatch: finds the cheapest equivalent listing for a source product."""

__version__ = "1.0.0"
