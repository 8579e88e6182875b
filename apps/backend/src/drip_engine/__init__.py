"""Embedded drip-automation engine for leasing CRM leads."""
