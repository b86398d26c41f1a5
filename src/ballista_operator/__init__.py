"""Kubernetes operator for Apache Arrow Ballista clusters."""

__version__ = "0.1.0"
