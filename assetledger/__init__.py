"""
Asset Lifecycle Ledger

Tamper-evident register -> sanitize -> recycle trail for IT assets.
"""

__version__ = "0.1.0"
