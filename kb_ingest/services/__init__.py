"""Service layer: extraction, splitting, ingestion and orchestration."""
