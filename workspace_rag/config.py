"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("RAG_DATA_DIR", str(BASE_DIR / "data")))
WORKSPACE_DIR = Path(os.getenv("WORKSPACE_DIR", str(BASE_DIR / "workspace")))

# Embedding provider (OpenAI-compatible)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-ada-002")
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "60.0"))

# Chunking (estimated tokens, see rag.chunker.estimate_tokens)
CHUNK_MAX_TOKENS = int(os.getenv("CHUNK_MAX_TOKENS", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))  # 10MB

# Embedding batches
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))
EMBEDDING_CONCURRENCY = int(os.getenv("EMBEDDING_CONCURRENCY", "5"))
EMBEDDING_MAX_RETRIES = int(os.getenv("EMBEDDING_MAX_RETRIES", "3"))
EMBEDDING_RETRY_DELAY = float(os.getenv("EMBEDDING_RETRY_DELAY", "1.0"))  # seconds

# Retrieval
SEARCH_LIMIT = int(os.getenv("SEARCH_LIMIT", "5"))
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.5"))
MAX_CONTEXT_TOKENS = int(os.getenv("MAX_CONTEXT_TOKENS", "1500"))

# Tools
TOOL_TIMEOUT = float(os.getenv("TOOL_TIMEOUT", "30.0"))
PROCESSING_TOOL_TIMEOUT = float(os.getenv("PROCESSING_TOOL_TIMEOUT", "600.0"))

# Database
VECTOR_STORE_PATH = Path(os.getenv("VECTOR_STORE_PATH", str(DATA_DIR / "vector_store.db")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
