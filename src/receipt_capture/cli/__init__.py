"""Command line entry point (``receipt-capture``)."""
