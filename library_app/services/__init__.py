"""Library App - Services Package

This package contains service modules for external integrations:
- Google Books API service
- Background job queue and the catalog enrichment processor
- HTTP client abstraction
"""
