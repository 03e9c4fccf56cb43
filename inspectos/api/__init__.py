"""InspectOS HTTP API (FastAPI)."""
