"""
API tests for the rating, operator and health endpoints.
"""
