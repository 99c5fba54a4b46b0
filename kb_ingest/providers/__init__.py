"""Concrete provider adapters (embedding, OCR, vector store, knowledge store)."""
