"""Command-line tools for kb-ingest."""
