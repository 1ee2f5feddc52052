"""Bounded ERC20 Transfer indexer."""

__version__ = "0.1.0"
