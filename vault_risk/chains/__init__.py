"""Ledger clients per chain."""
