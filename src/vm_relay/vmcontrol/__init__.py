"""Adapter for the remote VM-control API."""
