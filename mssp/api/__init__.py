"""FastAPI routers for the MSSP service."""
