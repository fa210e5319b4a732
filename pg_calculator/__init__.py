"""Shared calculator: one accumulator row in PostgreSQL behind a small Flask API."""

__version__ = "0.1.0"
