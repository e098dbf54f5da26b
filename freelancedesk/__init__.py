"""Freelance business-management backend: quotes, invoices and payments."""

__version__ = "0.1.0"
