"""Core orchestration package.

Architectural role:
    Exposes the per-request pipeline that sits between the CLI/HTTP front ends
    and the retrieval, web and model subsystems.

Composition:
    - `engine`: pipeline configuration, orchestration and construction helpers.
    - `request_store`: per-run aggregate of sources and chunk linkage.
    - `errors`: exception hierarchy shared by every layer.

Determinism and side effects:
    Package import itself is deterministic and side-effect free.
"""
