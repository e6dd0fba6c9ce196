"""
dq-audit: daily data-quality audit over paired event and transaction feeds.
"""

__version__ = "0.1.0"
