"""Membership lifecycle consistency engine: state machine, store and runtime primitives."""

__version__ = "0.1.0"
