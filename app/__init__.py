"""NeedleDrop FastAPI application package."""
