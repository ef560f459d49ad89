"""
pytest test suite for the Farm Shop backend.

Test categories:
- unit: Service layer against an in-memory SQLite database and provider fakes
- api: FastAPI routes through httpx ASGITransport
- integration: Background workers and DB constraints on a file-backed database
"""
