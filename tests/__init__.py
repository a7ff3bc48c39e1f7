"""
Real Estate Monitor Test Suite

This package contains all tests for the Real Estate Monitor application.
Tests are organized into:
- unit/: Unit tests for individual components
- mocked_scrapers/: Tests for scrapers with mocked browser
"""
