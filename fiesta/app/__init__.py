"""FastAPI application and response normalization core."""
