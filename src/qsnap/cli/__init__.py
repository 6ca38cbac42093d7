"""Command line interface for Quantum Snap."""
