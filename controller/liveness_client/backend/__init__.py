"""Liveness service REST and streaming clients."""
