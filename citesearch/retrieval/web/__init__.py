"""Web retrieval subpackage.

Architectural role:
    Provides the search-provider client and page scraper driven by
    `FetchCoordinator`.

Security model:
    Extracted web content is treated as untrusted and sanitized before it is
    stored, chunked or placed in a prompt.
"""
