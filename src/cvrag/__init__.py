"""Profile enrichment, indexing and grounded chat for CV owners."""

__version__ = "0.1.0"
