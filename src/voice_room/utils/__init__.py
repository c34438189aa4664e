"""Shared utilities for the voice room package."""
