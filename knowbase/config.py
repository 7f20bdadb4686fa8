"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("KNOWBASE_DATA_DIR", str(BASE_DIR / "data")))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Database
DB_PATH = Path(os.getenv("KNOWBASE_DB_PATH", str(DATA_DIR / "knowbase.sqlite")))

# Embedding provider (OpenRouter-compatible /embeddings endpoint)
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
APP_TITLE = os.getenv("APP_TITLE", "knowbase")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "openai/text-embedding-3-small")
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "60.0"))

# Chunking parameters (character-based, page-aware)
CHUNK_MAX_CHARS = int(os.getenv("CHUNK_MAX_CHARS", "2500"))
CHUNK_OVERLAP_CHARS = int(os.getenv("CHUNK_OVERLAP_CHARS", "250"))

# Embedding batches
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "32"))
MAX_EMBED_BATCH_SIZE = 32

# Retrieval
DEFAULT_TOP_K = int(os.getenv("DEFAULT_TOP_K", "6"))
MIN_TOP_K = 1
MAX_TOP_K = 20
CONTEXT_MAX_CHARS_PER_HIT = int(os.getenv("CONTEXT_MAX_CHARS_PER_HIT", "1400"))

# Server
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "5001"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
