"""Shared runtime plumbing: run context, logging, configuration, process helpers."""
