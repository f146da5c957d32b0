"""HTTP transport for model backends.

Architectural role:
    Executes embedding and streamed generation requests against remote or
    local model servers and normalizes their response shapes.

Model invocation flow:
    `service.HostedModelBackend` -> `request_embedding` / `stream_chat_completion`
    `service.LocalModelBackend`  -> `stream_ollama_generate`

Retry behavior:
    No retry loop. Each call is attempted once with the configured timeout.

Failure handling model:
    Transport failures are raised as `EmbeddingError` (embedding calls) or
    `AnswerError` (generation calls) with the provider URL as call context.
    Streaming generators raise from inside iteration.
"""

import json
import logging
from typing import Any, Iterator

import requests

from citesearch.core.errors import AnswerError, EmbeddingError
from citesearch.llm.provider_config import ModelBackendConfig


logger = logging.getLogger(__name__)


def _auth_headers(config: ModelBackendConfig) -> dict:
    headers = {"Content-Type": "application/json"}
    if config.api_key:
        headers["Authorization"] = f"Bearer {config.api_key}"
    return headers


def _status_label(err: requests.exceptions.RequestException) -> str:
    status_code = None
    if getattr(err, "response", None) is not None:
        status_code = getattr(err.response, "status_code", None)
    if status_code:
        return f"HTTP error ({status_code})"
    return f"{err.__class__.__name__}"


def request_embedding(config: ModelBackendConfig, text: str) -> list[float]:
    """Embed one text through an OpenAI-compatible `/embeddings` endpoint.

    Returns:
        Embedding vector as floats.

    Raises:
        EmbeddingError: Transport failure, non-success status, or a response
            without `data[0].embedding`.
    """
    url = f"{config.base_url}/embeddings"
    call = f"POST {url}"
    payload = {"model": config.embedding_model, "input": text}

    try:
        response = requests.post(
            url,
            headers=_auth_headers(config),
            json=payload,
            timeout=config.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.RequestException as err:
        raise EmbeddingError(_status_label(err), call=call) from err
    except ValueError as err:
        raise EmbeddingError("response is not valid JSON", call=call) from err

    try:
        embedding = data["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError) as err:
        raise EmbeddingError("response has no embedding", call=call) from err

    return [float(x) for x in embedding]


def extract_delta(data: dict[str, Any]) -> str | None:
    """Extract incremental text from common OpenAI-compatible chunk shapes."""
    if "choices" in data and data["choices"]:
        choice = data["choices"][0]

        if "delta" in choice and choice["delta"].get("content"):
            return choice["delta"]["content"]

        if "message" in choice and choice["message"].get("content"):
            return choice["message"]["content"]

        if "text" in choice:
            return choice["text"]

    elif "message" in data and isinstance(data["message"], dict):
        return data["message"].get("content")

    return None


def stream_chat_completion(config: ModelBackendConfig, payload: dict) -> Iterator[str]:
    """Yield text deltas from an OpenAI-compatible streamed chat completion.

    Behavior:
        - Parses `data: {...}` lines, stopping at `[DONE]`.
        - Lines that are not JSON (keep-alives, comments) are ignored.

    Raises:
        AnswerError: Transport failure or non-success status.
    """
    url = f"{config.base_url}/chat/completions"
    try:
        with requests.post(
            url,
            headers=_auth_headers(config),
            json={**payload, "stream": True},
            stream=True,
            timeout=config.timeout_seconds,
        ) as response:

            response.raise_for_status()
            response.encoding = "utf-8"

            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue

                if line.startswith("data: "):
                    line = line[6:]

                if line.strip() == "[DONE]":
                    break

                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue

                delta = extract_delta(data) if isinstance(data, dict) else None
                if delta:
                    yield delta

    except requests.exceptions.RequestException as err:
        raise AnswerError(_status_label(err), call=f"POST {url}") from err


def stream_ollama_generate(config: ModelBackendConfig, system: str, prompt: str) -> Iterator[str]:
    """Yield text fragments from Ollama `/api/generate` NDJSON streaming.

    Raises:
        AnswerError: Transport failure, non-success status, or an `error`
            field in the stream.
    """
    url = f"{config.ollama_url}/api/generate"
    call = f"POST {url}"
    payload = {
        "model": config.chat_model,
        "system": system,
        "prompt": prompt,
        "stream": True,
        "options": {"temperature": config.temperature},
    }

    try:
        with requests.post(url, json=payload, stream=True, timeout=config.timeout_seconds) as response:
            response.raise_for_status()
            response.encoding = "utf-8"

            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if not isinstance(data, dict):
                    continue

                if data.get("error"):
                    raise AnswerError(str(data["error"]), call=call)

                fragment = data.get("response")
                if fragment:
                    yield fragment

                if data.get("done"):
                    break

    except requests.exceptions.RequestException as err:
        raise AnswerError(_status_label(err), call=call) from err
