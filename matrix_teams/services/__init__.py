"""Matrix Teams bridge - Services Package

This package contains the clients for the two systems being bridged:
- Matrix client-server API (matrix_service)
- Teams web APIs (teams_service)
- Shared HTTP client (http_client)
"""
