"""Spreadsheet-driven orchestration of conversational-AI web sessions."""

__version__ = "0.1.0"
