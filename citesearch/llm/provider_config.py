"""Model backend configuration for embedding and answer generation.

Architectural role:
    Centralizes backend selection, model names, endpoints and credential lookup
    for `citesearch.llm.client` and `citesearch.llm.service`.

Backend selection:
    `MODEL_BACKEND` picks one implementation once at startup:
    - `hosted`: OpenAI-compatible HTTP API for embeddings and chat.
    - `local`: sentence-transformers embeddings + Ollama generation.
    The choice is explicit; endpoints are never inspected to guess the mode.

Failure behavior:
    `validate()` raises `ConfigurationError` listing every missing variable for
    the selected backend.
"""

import os
from dataclasses import dataclass

from citesearch.core.errors import ConfigurationError


BACKENDS = ("hosted", "local")

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"
DEFAULT_LOCAL_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


def load_key(path):
    """Load an API key from environment override or key file.

    Resolution order:
        1. Environment variable inferred from the file stem (for example
           `config/openai.key` -> `OPENAI_API_KEY`).
        2. Raw file contents at `path`.

    Returns:
        Key string or `None` when not available.
    """
    if not path:
        return None
    key_name = os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"
    env_value = os.getenv(key_name)
    if env_value:
        return env_value
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip()


@dataclass(frozen=True)
class ModelBackendConfig:
    """Settings for the selected model backend.

    Relevant environment variables:
        - `MODEL_BACKEND`
        - `OPENAI_BASE_URL`, `OPENAI_API_KEY` (or `config/openai.key`)
        - `EMBEDDING_MODEL_NAME`, `CHAT_MODEL_NAME`
        - `OLLAMA_URL`, `LOCAL_EMBEDDING_MODEL`
        - `MODEL_TIMEOUT_SECONDS`, `TEMPERATURE`
    """

    backend: str = "hosted"
    base_url: str = DEFAULT_OPENAI_BASE_URL
    api_key: str = ""
    embedding_model: str = ""
    chat_model: str = ""
    ollama_url: str = DEFAULT_OLLAMA_URL
    local_embedding_model: str = DEFAULT_LOCAL_EMBEDDING_MODEL
    timeout_seconds: float = 120.0
    temperature: float = 0.0

    @classmethod
    def from_env(cls) -> "ModelBackendConfig":
        base_url = os.getenv("OPENAI_BASE_URL", "").strip() or DEFAULT_OPENAI_BASE_URL
        return cls(
            backend=os.getenv("MODEL_BACKEND", "hosted").strip().lower(),
            base_url=base_url.rstrip("/"),
            api_key=load_key("config/openai.key") or "",
            embedding_model=os.getenv("EMBEDDING_MODEL_NAME", "").strip(),
            chat_model=os.getenv("CHAT_MODEL_NAME", "").strip(),
            ollama_url=(os.getenv("OLLAMA_URL", "").strip() or DEFAULT_OLLAMA_URL).rstrip("/"),
            local_embedding_model=(
                os.getenv("LOCAL_EMBEDDING_MODEL", "").strip() or DEFAULT_LOCAL_EMBEDDING_MODEL
            ),
            timeout_seconds=float(os.getenv("MODEL_TIMEOUT_SECONDS", "120")),
            temperature=float(os.getenv("TEMPERATURE", "0.0")),
        )

    def validate(self) -> "ModelBackendConfig":
        """Check required settings for the selected backend.

        Returns:
            `self`, for chaining.

        Raises:
            ConfigurationError: Unknown backend or missing variables.
        """
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unsupported MODEL_BACKEND: {self.backend!r}; expected one of {BACKENDS}")

        missing = []
        if not self.chat_model:
            missing.append("CHAT_MODEL_NAME")
        if self.backend == "hosted":
            if not self.api_key:
                missing.append("OPENAI_API_KEY")
            if not self.embedding_model:
                missing.append("EMBEDDING_MODEL_NAME")

        if missing:
            raise ConfigurationError(
                "The environment variables " + ", ".join(missing) + " must be set and not empty."
            )
        return self
