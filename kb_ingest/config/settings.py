"""Application settings loaded from environment variables via pydantic-settings.

Field ``embedding_batch_size`` maps to ``EMBEDDING_BATCH_SIZE`` and so on;
values in a local ``.env`` file are used when the variable is not set in
the process environment.  ``load_config`` layers these over
``config/config.yaml``.
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """kb-ingest settings.

    Environment variables override defaults. Loaded from .env when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Embedding / Vision endpoints (OpenAI-compatible) ===
    openai_api_key: str = ""
    openai_base_url: str = ""  # e.g. https://dashscope.aliyuncs.com/compatible-mode/v1
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    embedding_batch_size: int = 10
    embedding_timeout_seconds: float = 30.0

    # === OCR ===
    ocr_provider: Literal["vision", "tesseract"] = "vision"
    ocr_vision_model: str = "gpt-4o-mini"
    ocr_tesseract_lang: str = "chi_sim+eng"
    ocr_dpi: int = 200
    ocr_timeout_seconds: float = 120.0
    rasterize_timeout_seconds: float = 30.0
    ocr_concurrency: int = 1
    pdf_min_text_chars: int = 50
    ocr_max_pages: int = 0  # 0 = every page

    # === Semantic splitter (characters) ===
    splitter_target_chunk_size: int = 800
    splitter_chunk_overlap: int = 160
    splitter_min_chunk_size: int = 200
    splitter_max_chunk_size: int = 1500

    # === Vector store ===
    vector_store_backend: Literal["file", "chroma_persistent", "chroma_http"] = "file"
    vector_store_file: str = "data/vector_store.json"
    chromadb_persist_dir: str = "data/chromadb"
    chromadb_host: str = "localhost"
    chromadb_port: int = 8000
    chromadb_collection: str = "knowledge_base"

    # === Relational store / uploads ===
    knowledge_db_path: str = "data/knowledge.db"
    upload_dir: str = "uploads"

    # === Job queue (Redis) ===
    queue_url: str = ""  # empty = queue disabled, uploads are indexed inline
    queue_name: str = "kb:ingest"
    queue_poll_timeout_seconds: float = 5.0
    queue_reconnect_delay_seconds: float = 5.0

    # === Same-title handling ===
    sync_duplicate_policy: Literal["conflict", "replace"] = "conflict"
    async_duplicate_policy: Literal["conflict", "replace"] = "replace"

    # === App ===
    app_env: str = "development"
    log_level: str = "INFO"
