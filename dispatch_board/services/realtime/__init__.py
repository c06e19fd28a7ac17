"""
Real-time services: cross-process change feed and WebSocket fan-out.
"""
