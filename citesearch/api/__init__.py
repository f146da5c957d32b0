"""citesearch front-end package.

Architectural role:
- Defines the external interaction boundary for the CLI and HTTP interfaces.
- Performs argument/request validation and output shaping.
- Delegates all pipeline work to the core layer.

Scope:
- `cli`: one-shot terminal query with streamed answer.
- `http_api`: FastAPI service with JSON citations and SSE answers.
- `logging_config`: handler setup shared by both front ends.
"""
