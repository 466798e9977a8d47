"""Persisted layout and query helpers for installment lifecycle data."""
