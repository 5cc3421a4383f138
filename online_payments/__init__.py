"""Online payments: charge, query and refund with webhook reconciliation."""

__version__ = "0.1.0"
