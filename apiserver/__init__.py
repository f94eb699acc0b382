"""
API server bootstrap.

Starts the service process:
- Storage connection (SQLite)
- HTTP listener (FastAPI served by uvicorn)
- Readiness signalling and startup failure exit codes
"""

__version__ = "0.1.0"
