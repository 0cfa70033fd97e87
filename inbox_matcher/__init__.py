"""
Inbox Matching Engine

Pairs inbound financial documents (receipts, invoices) with ledger
transactions, scores the candidates on several signals, and keeps a
per-pair suggestion state machine that users confirm or decline.
"""

__version__ = "1.0.0"
