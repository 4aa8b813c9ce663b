"""
AI Router Test Suite
====================

Run all tests:
    pytest tests/ -v

Run with coverage:
    pytest tests/ --cov=ai_router --cov-report=html

Security note: These tests use fake providers and mocked HTTP
transports and do not require real API keys or running local servers.
"""
