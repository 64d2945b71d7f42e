"""Shared utilities for trackgate."""
