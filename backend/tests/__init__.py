"""
Test suite for the backend application.

Service-level tests live next to the services; this package covers the HTTP
surface.
"""
