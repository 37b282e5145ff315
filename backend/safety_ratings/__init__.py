"""
NHTSA vehicle safety rating pipeline.
"""

__version__ = "0.1.0"
