"""Command-line surface for ``verify-book``."""
