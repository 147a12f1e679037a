"""Helpers shared by every chunking strategy."""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from workspace_rag.rag.types import ChunkMetadata, FileType

_ALPHANUMERIC = re.compile(r"[A-Za-z0-9]")


def estimate_tokens(text: str) -> int:
    """Estimate the token count of text without a tokenizer.

    ASCII letters and digits count as one token each; every other
    character (whitespace, punctuation, non-Latin scripts) counts as two.

    Args:
        text: Text to measure

    Returns:
        Estimated token count
    """
    alphanumeric = len(_ALPHANUMERIC.findall(text))
    return alphanumeric + (len(text) - alphanumeric) * 2


def build_metadata(
    file_path: str,
    file_type: FileType,
    start_position: int,
    end_position: int,
    token_count: int,
    additional_metadata: Optional[Dict[str, Any]] = None,
) -> ChunkMetadata:
    """Create chunk metadata stamped with the current UTC time."""
    return ChunkMetadata(
        file_path=file_path,
        file_type=file_type,
        start_position=start_position,
        end_position=end_position,
        token_count=token_count,
        created_at=datetime.now(timezone.utc).isoformat(),
        additional_metadata=additional_metadata,
    )
