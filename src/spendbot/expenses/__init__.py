"""Expense parsing, currency handling, receipt pipeline and ledger operations."""
