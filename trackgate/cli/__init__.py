"""Command line interface for trackgate."""
