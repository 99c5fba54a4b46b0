"""Configuration for kb-ingest (pydantic-settings + YAML defaults)."""

from kb_ingest.config.loader import load_config
from kb_ingest.config.settings import Settings

__all__ = ["Settings", "load_config"]
