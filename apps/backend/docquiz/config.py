# apps/backend/docquiz/config.py
import os
from urllib.parse import quote_plus
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load .env from the current working directory (run uvicorn from repo root)
load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", extra="ignore")
    # Optional; if missing, we'll construct from POSTGRES_* vars.
    database_url: str | None = None
    create_tables: bool = False

    openai_api_key: str | None = None

    # Embeddings
    embedding_provider: str = "openai"      # openai | fake
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536

    # Question generation
    qgen_provider: str = "openai"           # openai | heuristic
    qgen_model: str = "gpt-4o-mini"
    qgen_temperature: float = 0.2

    # OCR for pages without a text layer
    ocr_provider: str = ""                  # "" | openai
    ocr_model: str = "gpt-4o-mini"
    ocr_dpi: int = 150

    retrieval_k: int = 40
    max_pages: int = 200

    cache_ttl_seconds: float = 600.0
    cache_max_entries: int = 128

    log_level: str = "INFO"

def get_database_url() -> str:
    """Return a SQLAlchemy URL. Prefer DATABASE_URL; else build from POSTGRES_*.

    Handles special characters in password via URL encoding.
    """
    # 1) Direct DATABASE_URL wins
    direct = os.getenv("DATABASE_URL")
    if direct:
        return direct

    # 2) Construct from POSTGRES_* (works in Docker compose)
    user = os.getenv("POSTGRES_USER", "docquiz")
    pwd = os.getenv("POSTGRES_PASSWORD", "docquiz")
    host = os.getenv("POSTGRES_HOST") or os.getenv("DB_HOST") or "db"
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "docquiz")
    user_enc = quote_plus(user)
    pwd_enc = quote_plus(pwd)
    return f"postgresql+psycopg://{user_enc}:{pwd_enc}@{host}:{port}/{db}"

settings = Settings()
