"""
PostgreSQL models, repositories and session handling.
"""
