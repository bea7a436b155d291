"""Command line interface for elx."""
