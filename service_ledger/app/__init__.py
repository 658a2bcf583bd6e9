"""
Ledger verification gateway service.
"""
