"""Core domain: models, errors and the in-memory session components."""
