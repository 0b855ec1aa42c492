"""Packaged data files for broker adapters."""
