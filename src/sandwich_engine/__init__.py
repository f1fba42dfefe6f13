"""Sandwich Engine - mempool-driven AMM sandwich detection and bundle execution."""

__version__ = "0.1.0"
