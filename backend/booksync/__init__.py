"""Order to accounting-ledger synchronization service."""

__version__ = "0.1.0"
