"""Spreadsheet ledger import and export."""

__version__ = "0.3.0"
