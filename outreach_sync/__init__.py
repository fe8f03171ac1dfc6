"""Outreach activity sync core"""

__version__ = "1.0.0"
