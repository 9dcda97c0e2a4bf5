"""Core data structures: analysis IR, exceptions and AnnData helpers."""
