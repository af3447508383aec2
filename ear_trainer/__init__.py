"""Relative-pitch ear-training games: round generators, tone engine and session."""

__version__ = '0.1.0'
