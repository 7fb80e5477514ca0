"""Anxiety detection and session engine for shared wearable devices.

This package holds the business logic and domain models, isolated from the
realtime store, audit store and push gateway so it can be tested in-process.
"""

__version__ = "0.1.0"
