"""HTTP boundary to the remote receipt service."""

from .client import ReceiptApiClient

__all__ = ["ReceiptApiClient"]
