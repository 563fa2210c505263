"""
Street Imagery Coverage Test Suite

This package contains tests for the coverage engine (tiles, Graph API client, sequence cache,
coverage filters, refresh scheduler, click dispatcher) and its HTTP service.

Structure:
- unit/: Unit tests for individual components
- integration/: Integration tests for the FastAPI service
"""
