"""Integration synchronization engine for agency calendar, spreadsheet and invoicing data."""

__version__ = "0.1.0"
