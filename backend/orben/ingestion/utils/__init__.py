"""Shared helpers for fetchers and the normalization pipeline."""
