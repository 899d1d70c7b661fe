"""Counsel task orchestration and tool-calling engine."""

__version__ = "0.1.0"
