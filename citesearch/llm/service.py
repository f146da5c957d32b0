"""Model backends: embedding + cited answer generation behind one interface.

Architectural role:
    Provides the `ModelBackend` capability consumed by the pipeline:
    - `embed(text)` for the chunk embedding phase and the query probe.
    - `stream_answer(query, records)` for the answer stage.

Implementations:
    - `HostedModelBackend`: OpenAI-compatible API for both capabilities.
    - `LocalModelBackend`: sentence-transformers embeddings loaded once at
      construction, Ollama for generation.
    `build_model_backend(config)` picks one from explicit configuration.

Determinism:
    Payload construction is deterministic. Embeddings from the local model are
    deterministic for a fixed model; remote output is not.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterator, List

from citesearch.core.errors import ConfigurationError, EmbeddingError
from citesearch.llm import client
from citesearch.llm.provider_config import ModelBackendConfig
from citesearch.prompting.prompt_builder import SYSTEM_IDENTITY, build_answer_prompt
from citesearch.retrieval.assembler import CitationRecord


logger = logging.getLogger(__name__)


class ModelBackend(ABC):
    """Embedding and answer-generation capability."""

    name = "abstract"

    def __init__(self, config: ModelBackendConfig) -> None:
        self.config = config

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Return a fixed-dimension embedding for `text`.

        Raises:
            EmbeddingError: On any backend failure.
        """
        ...

    @abstractmethod
    def stream_answer(self, query: str, records: List[CitationRecord]) -> Iterator[str]:
        """Yield answer text fragments with inline `[n]` citation markers.

        Every call returns a fresh generator.

        Raises:
            AnswerError: From inside iteration on transport failure.
        """
        ...

    def describe(self) -> str:
        return f"{self.name} (chat model: {self.config.chat_model})"


class HostedModelBackend(ModelBackend):
    """OpenAI-compatible hosted backend."""

    name = "hosted"

    def embed(self, text: str) -> List[float]:
        return client.request_embedding(self.config, text)

    def stream_answer(self, query: str, records: List[CitationRecord]) -> Iterator[str]:
        payload = {
            "model": self.config.chat_model,
            "messages": [
                {"role": "system", "content": SYSTEM_IDENTITY},
                {"role": "user", "content": build_answer_prompt(query, records)},
            ],
            "temperature": self.config.temperature,
        }
        return client.stream_chat_completion(self.config, payload)


class LocalModelBackend(ModelBackend):
    """Local backend: sentence-transformers embeddings and Ollama generation.

    The embedding model is loaded once here and shared by all embed calls.
    Calls are serialized because the pipeline invokes `embed` from worker
    threads.
    """

    name = "local"

    def __init__(self, config: ModelBackendConfig, model=None) -> None:
        super().__init__(config)
        if model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading local embedding model %s", config.local_embedding_model)
            model = SentenceTransformer(config.local_embedding_model)
        self._model = model
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        try:
            with self._lock:
                vector = self._model.encode(text, convert_to_numpy=True, show_progress_bar=False)
        except (RuntimeError, ValueError) as exc:
            raise EmbeddingError(str(exc), call=f"encode[{self.config.local_embedding_model}]") from exc
        return [float(x) for x in vector]

    def stream_answer(self, query: str, records: List[CitationRecord]) -> Iterator[str]:
        prompt = build_answer_prompt(query, records)
        return client.stream_ollama_generate(self.config, SYSTEM_IDENTITY, prompt)


def build_model_backend(config: ModelBackendConfig) -> ModelBackend:
    """Instantiate the backend named by `config.backend`.

    Raises:
        ConfigurationError: Invalid or incomplete configuration.
    """
    config.validate()

    if config.backend == "local":
        backend: ModelBackend = LocalModelBackend(config)
    elif config.backend == "hosted":
        backend = HostedModelBackend(config)
    else:
        raise ConfigurationError(f"Unsupported MODEL_BACKEND: {config.backend!r}")

    logger.info("Using model backend: %s", backend.describe())
    return backend
