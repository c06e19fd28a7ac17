"""
Pydantic schemas for the HTTP adapter.
"""
