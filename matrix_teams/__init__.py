"""Matrix Teams bridge - Core Application Package

This package contains the Application Service modules:
- HTTP endpoints for the homeserver (api.py)
- Teams to Matrix mirroring (bridge.py)
- CLI interface (main.py)
- Teams data model (models.py)
- Settings (config.py)
"""
