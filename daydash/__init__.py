"""Daydash news ingestion pipeline."""

__version__ = "2.1.0"
