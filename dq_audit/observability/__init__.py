"""
Logging and metrics for the audit pipeline.
"""
