"""Tests for the search and scrape phases."""

import asyncio

import pytest

from conftest import FakeScraper, FakeSearchClient
from citesearch.core.errors import FetchError, ParseError, ProviderError
from citesearch.core.request_store import RequestStore, source_id_for
from citesearch.retrieval.fetch_coordinator import FetchCoordinator
from citesearch.retrieval.web.web_module import SearchHit


HITS = [
    SearchHit("A", "https://a.example.com/"),
    SearchHit("B", "https://b.example.com/"),
    SearchHit("C", "https://c.example.com/"),
]


class TestCollectSources:
    @pytest.mark.asyncio
    async def test_hits_become_sources(self):
        store = RequestStore("q")
        search = FakeSearchClient(HITS)
        coordinator = FetchCoordinator(store, search, FakeScraper())

        records = await coordinator.collect_sources("q", 2)

        assert [r.title for r in records] == ["A", "B"]
        assert len(store) == 2
        assert search.calls == [("q", 2)]
        assert all(r.content is None for r in store.get_sources())

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        store = RequestStore("q")
        search = FakeSearchClient(error=ProviderError("down", call="bing search"))
        coordinator = FetchCoordinator(store, search, FakeScraper())

        with pytest.raises(ProviderError):
            await coordinator.collect_sources("q", 10)
        assert len(store) == 0


class TestScrapeAll:
    @pytest.mark.asyncio
    async def test_failures_leave_other_sources_intact(self):
        store = RequestStore("q")
        scraper = FakeScraper(
            pages={"https://a.example.com/": "alpha text", "https://c.example.com/": "gamma text"},
            failures={"https://b.example.com/": ParseError("no text")},
        )
        coordinator = FetchCoordinator(store, FakeSearchClient(HITS), scraper)
        await coordinator.collect_sources("q", 10)

        report = await coordinator.scrape_all()

        assert report.attempted == 3
        assert report.succeeded == 2
        assert report.failed_urls == ["https://b.example.com/"]
        content = {r.url: r.content for r in store.get_sources()}
        assert content == {
            "https://a.example.com/": "alpha text",
            "https://b.example.com/": None,
            "https://c.example.com/": "gamma text",
        }

    @pytest.mark.asyncio
    async def test_all_failures_is_not_an_error(self):
        store = RequestStore("q")
        scraper = FakeScraper(failures={h.url: FetchError("boom") for h in HITS})
        coordinator = FetchCoordinator(store, FakeSearchClient(HITS), scraper)
        await coordinator.collect_sources("q", 10)

        report = await coordinator.scrape_all()

        assert report.succeeded == 0
        assert report.failed == 3

    @pytest.mark.asyncio
    async def test_timeout_treated_as_fetch_failure(self):
        store = RequestStore("q")
        scraper = FakeScraper(
            pages={h.url: "text" for h in HITS},
            delays={"https://a.example.com/": 1.0},
        )
        coordinator = FetchCoordinator(store, FakeSearchClient(HITS), scraper, timeout_seconds=0.05)
        await coordinator.collect_sources("q", 10)

        report = await coordinator.scrape_all()

        assert report.failed_urls == ["https://a.example.com/"]
        assert store.get_source(source_id_for("https://a.example.com/")).content is None

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        store = RequestStore("q")
        scraper = FakeScraper(failures={"https://a.example.com/": RuntimeError("bug")})
        coordinator = FetchCoordinator(store, FakeSearchClient(HITS[:1]), scraper)
        await coordinator.collect_sources("q", 10)

        with pytest.raises(RuntimeError):
            await coordinator.scrape_all()

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        store = RequestStore("q")
        scraper = FakeScraper(pages={h.url: "text" for h in HITS})
        coordinator = FetchCoordinator(store, FakeSearchClient(HITS), scraper, max_concurrency=1)
        await coordinator.collect_sources("q", 10)

        report = await coordinator.scrape_all()

        assert report.succeeded == 3
        assert sorted(scraper.calls) == sorted(h.url for h in HITS)

    @pytest.mark.asyncio
    async def test_ten_sources_three_failures(self):
        hits = [SearchHit(f"S{i}", f"https://s{i}.example.com/") for i in range(10)]
        failing = {hits[i].url for i in (1, 4, 8)}
        scraper = FakeScraper(
            pages={h.url: f"content {h.title}" for h in hits if h.url not in failing},
            failures={url: FetchError("reset") for url in failing},
        )
        store = RequestStore("q")
        coordinator = FetchCoordinator(store, FakeSearchClient(hits), scraper)
        await coordinator.collect_sources("q", 10)

        report = await coordinator.scrape_all()

        sources = store.get_sources()
        assert report.succeeded == 7
        assert sum(1 for s in sources if s.content) == 7
        assert {s.url for s in sources if s.content is None} == failing

    @pytest.mark.asyncio
    async def test_unexpected_error_cancels_pending_scrapes(self):
        store = RequestStore("q")
        scraper = FakeScraper(
            pages={"https://b.example.com/": "late text", "https://c.example.com/": "late text"},
            failures={"https://a.example.com/": RuntimeError("bug")},
            delays={"https://b.example.com/": 0.2, "https://c.example.com/": 0.2},
        )
        coordinator = FetchCoordinator(store, FakeSearchClient(HITS), scraper)
        await coordinator.collect_sources("q", 10)

        with pytest.raises(RuntimeError):
            await coordinator.scrape_all()
        await asyncio.sleep(0.4)

        assert all(r.content is None for r in store.get_sources())
