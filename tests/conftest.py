"""
Shared test fixtures and fake collaborators.

The fakes stand in for the network collaborators of the pipeline:
    FakeSearchClient  - returns a fixed hit list (or raises)
    FakeScraper       - returns canned page text, with forced per-URL failures
    FakeBackend       - deterministic keyword-count embeddings, canned answers
"""

import asyncio
import threading

import pytest

from citesearch.core.engine import PipelineConfig, SearchPipeline
from citesearch.core.errors import EmbeddingError, FetchError
from citesearch.retrieval.web.web_module import SearchHit


KEYWORDS = ("paris", "capital", "france", "berlin")


def keyword_vector(text: str) -> list[float]:
    """Bag-of-keywords vector plus a constant bias term."""
    words = [w.strip(".,;:!?").lower() for w in text.split()]
    return [float(words.count(k)) for k in KEYWORDS] + [1.0]


class FakeSearchClient:
    def __init__(self, hits=None, error=None):
        self.hits = list(hits or [])
        self.error = error
        self.calls = []

    async def search(self, query, limit):
        self.calls.append((query, limit))
        if self.error is not None:
            raise self.error
        return self.hits[:limit]


class FakeScraper:
    def __init__(self, pages=None, failures=None, delays=None):
        self.pages = dict(pages or {})
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.calls = []

    async def fetch_and_extract(self, url):
        self.calls.append(url)
        delay = self.delays.get(url)
        if delay:
            await asyncio.sleep(delay)
        if url in self.failures:
            raise self.failures[url]
        if url not in self.pages:
            raise FetchError("404", call=f"GET {url}")
        return self.pages[url]


class FakeBackend:
    """Deterministic model backend.

    Args:
        fail_on: Substring; texts containing it raise `EmbeddingError`.
        answer: Fragments yielded by `stream_answer`.
    """

    def __init__(self, fail_on=None, answer=("Paris is the capital [1].",)):
        self.fail_on = fail_on
        self.answer = list(answer)
        self.embedded = []
        self.answer_calls = []
        self._lock = threading.Lock()

    def embed(self, text):
        with self._lock:
            self.embedded.append(text)
        if self.fail_on and self.fail_on in text:
            raise EmbeddingError("forced failure", call="fake.embed")
        return keyword_vector(text)

    def stream_answer(self, query, records):
        self.answer_calls.append((query, list(records)))
        for fragment in self.answer:
            yield fragment


def words(token: str, count: int) -> str:
    return " ".join([token] * count)


@pytest.fixture
def france_hits():
    return [
        SearchHit(title="Paris - Wikipedia", url="https://en.wikipedia.org/wiki/Paris"),
        SearchHit(title="Broken page", url="https://broken.example.com/page"),
    ]


@pytest.fixture
def france_pages():
    # 1500 words -> two chunks of 1000 and 500 words
    first = "Paris is the capital of France " + words("city", 994)
    second = "Berlin " + words("river", 499)
    return {"https://en.wikipedia.org/wiki/Paris": first + " " + second}


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        result_limit=10,
        top_k=10,
        chunk_size=1000,
        scrape_timeout_seconds=5,
        embed_timeout_seconds=5,
    )


@pytest.fixture
def make_pipeline(pipeline_config):
    def _make(search_client, scraper, backend=None, config=None):
        return SearchPipeline(
            config=config or pipeline_config,
            search_client=search_client,
            scraper=scraper,
            backend=backend or FakeBackend(),
        )

    return _make
