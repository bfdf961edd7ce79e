"""HTTP surface — FastAPI application and tenant-scoped tool routes."""
