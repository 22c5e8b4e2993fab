"""Biblioteca - Services Package

This package contains the REST gateway modules:
- HTTP client abstraction and error mapping
- Catalog, loan and return gateways
- User gateway with offline fallback
- Reports and dashboard statistics
"""
