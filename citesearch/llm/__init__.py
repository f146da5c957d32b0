"""Model access package.

Architectural role:
    Provides backend configuration and transport adapters for the embedding
    and answer-generation capabilities used by the pipeline.

Module split:
    - `provider_config`: environment-driven backend and model configuration.
    - `service`: `ModelBackend` implementations and backend selection.
    - `client`: OpenAI-compatible and Ollama HTTP transport.
"""
