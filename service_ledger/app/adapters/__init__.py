from .ledger_client import LedgerClient

__all__ = ["LedgerClient"]
