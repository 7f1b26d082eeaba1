"""Relay buffer between the message queue and pull-based workers."""
