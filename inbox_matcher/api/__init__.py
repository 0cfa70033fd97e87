"""FastAPI application for the inbox matching engine."""
