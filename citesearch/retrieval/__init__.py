"""Retrieval package.

Architectural role:
    Turns search results into ranked, citable chunks for one request.

Scope:
    - `fetch_coordinator`: search and scrape phases.
    - `embedding_pipeline`: chunking and concurrent embedding.
    - `vector_index`: one-shot FAISS index keyed by chunk id.
    - `assembler`: numbered citation records from search results.
    - `web`: search-provider client and page scraper.
"""
