"""Command-line entrypoints for querygate."""
