"""Cross-provider media metadata aggregation."""

__version__ = "0.1.0"
