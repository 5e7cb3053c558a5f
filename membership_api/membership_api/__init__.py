"""HTTP control plane, scheduled jobs and operator CLI for the membership engine."""

__version__ = "0.1.0"
