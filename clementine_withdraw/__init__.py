"""Resumable Citrea to Bitcoin withdrawals through the Clementine bridge."""

__version__ = "0.1.0"
