"""Process-level helpers shared by the server and the CLI."""
