"""Synchronization core for bridging a Git repository with a TFS server path."""

__version__ = "0.3.0"
