"""Measurement and algorithm storage."""
