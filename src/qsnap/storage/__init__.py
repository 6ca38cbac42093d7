"""Persistence port, file store and persisted-schema normalisation."""
