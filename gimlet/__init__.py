"""A small HTTP web framework with route dispatch, middleware chains and a per-request context."""

__version__ = "0.1.0"

__all__ = ["context", "debug", "engine", "errors", "fs", "gins", "http", "inputs"]