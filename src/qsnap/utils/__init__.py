"""Shared utilities for Quantum Snap."""
