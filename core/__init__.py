"""Request/ingestion schemas."""
