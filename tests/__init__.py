"""
ReconSpider Test Suite
Tests for the crawl engine, command line and web API
"""
