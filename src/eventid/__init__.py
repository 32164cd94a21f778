"""EventID: regulatory-compliance event audit trail and workspace automation."""

__version__ = "0.1.0"
