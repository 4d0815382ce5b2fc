"""Chat model construction for artifact generation."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


def load_api_key(search_roots: Iterable[Path]) -> str:
    """Return OPENAI_API_KEY, loading the first ``.env`` found under ``search_roots``.

    Values already present in the environment win over ``.env`` files.

    Raises:
        RuntimeError: If OPENAI_API_KEY is still unset afterwards.
    """
    searched: list[str] = []
    for root in dict.fromkeys(search_roots):
        env_path = root / ".env"
        searched.append(str(env_path))
        if env_path.is_file():
            load_dotenv(env_path, override=False)
            break
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError(f"OPENAI_API_KEY is required for artifact generation (searched: {', '.join(searched)})")
    return key


def get_chat_model(
    settings: RuntimeSettings,
    *,
    temperature: float = 0.0,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Build the chat model configured by ``BUILD_LOOP_MODEL*`` settings.

    ``.env`` is looked up in ``repo_root`` (cwd when omitted), then in the
    workspace root.
    """
    roots = [repo_root if repo_root is not None else Path.cwd(), settings.workspace_root_path]
    load_api_key(roots)
    logger.debug(
        "Creating chat model %s (timeout=%ss, retries=%d)",
        settings.model_name,
        settings.model_timeout,
        settings.model_max_retries,
    )
    return ChatOpenAI(
        model=settings.model_name,
        temperature=temperature,
        timeout=settings.model_timeout,
        max_retries=settings.model_max_retries,
    )
