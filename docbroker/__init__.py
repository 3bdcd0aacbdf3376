"""
docbroker - document-cache facade and deployment reconciliation backend.
"""

__version__ = "0.1.0"
