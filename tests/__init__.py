"""
Furon Chat Test Suite
=====================

Run all tests:
    pytest tests/ -v

HTTP is faked with httpx.MockTransport; no test touches the network or
needs a real API key.
"""
