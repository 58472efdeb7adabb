"""HTTP API: FastAPI router, request/response schemas, and exception handlers."""
