"""Liveness streaming client: face-gated sessions against a remote scoring service."""

__version__ = "0.1.0"
