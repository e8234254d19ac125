"""Medical record verification client: ledger projections and guarded writes."""

__version__ = "0.1.0"
