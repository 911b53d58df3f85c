"""
Payment provider adapter tests

Each adapter runs against an httpx.MockTransport stub of its provider API.
"""
