"""Order fulfillment service: inventory ledger, payment simulation and the order workflow."""

__version__ = "0.1.0"
