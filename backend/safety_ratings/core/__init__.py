"""
Core module: configuration, logging, metrics and error handling.
"""
