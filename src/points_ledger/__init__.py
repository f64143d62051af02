"""Points ledger and payment-provider billing synchronization engine."""

__version__ = "0.1.0"
