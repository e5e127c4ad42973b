"""Change detection and reconciliation between a local attendance database
and its remote branch locations."""

__version__ = "0.1.0"
