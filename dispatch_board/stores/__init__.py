"""
Persistence adapters: hosted backend client and in-memory stores.
"""
