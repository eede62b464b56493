"""
Receipt capture – capture-to-transaction pipeline.

Turns photographed or uploaded receipt images into transactions, one at a time
or in batches, while tolerating flaky networks, flaky OCR and flaky cameras.

Subpackages:
- capture: camera/file acquisition behind a device-agnostic manager
- resilience: error classification, retry, fallback and the durable queue
- pipeline: scan submission, staging, materialization and batch orchestration
"""

__all__ = [
    "config",
    "logging",
    "paths",
]

__version__ = "0.3.0"
