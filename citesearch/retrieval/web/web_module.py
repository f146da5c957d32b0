"""Web search provider client and page scraper.

Architectural role:
    Implements the two network collaborators of the fetch phase:
    - `WebSearchClient.search(query, limit)`: one search-provider call returning
      ordered `SearchHit(title, url)` records.
    - `PageScraper.fetch_and_extract(url)`: fetch one page and return its main
      text.
    `FetchCoordinator` drives both and writes results into `RequestStore`.

Provider strategy:
    - `bing`: GET with `Ocp-Apim-Subscription-Key`, results in `webPages.value`.
    - `searxng`: GET `format=json`, results in `results`.
    - `duckduckgo`: instant-answer API, results in `RelatedTopics` (nested
      `Topics` groups are flattened).
    - `brave`: GET with `X-Subscription-Token`, results in `web.results`.
    - `serpapi`: GET Google engine, results in `organic_results`.
    - `tavily`: POST JSON, results in `results`.
    Result order is provider-defined and preserved.

Extraction:
    `trafilatura.extract` -> strip HTML/JS remnants -> remove prompt-injection
    tokens -> normalize whitespace -> optional `max_chars` cap.

Failure model:
    Requests are retried for transient statuses (`429,500,502,503,504`) and
    transport errors with exponential backoff. After exhaustion the search
    client raises `ProviderError`; the scraper raises `FetchError` for network
    failures and `ParseError` when no text can be extracted.
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx
import trafilatura

from citesearch.core.errors import ConfigurationError, FetchError, ParseError, ProviderError
from citesearch.core.request_store import normalize_url


logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

PROVIDER_ENDPOINTS = {
    "bing": "https://api.bing.microsoft.com/v7.0/search",
    "searxng": "https://searxng.example.com/search",
    "duckduckgo": "https://api.duckduckgo.com/",
    "brave": "https://api.search.brave.com/res/v1/web/search",
    "serpapi": "https://serpapi.com/search.json",
    "tavily": "https://api.tavily.com/search",
}

KEYLESS_PROVIDERS = ("searxng", "duckduckgo")


@dataclass(frozen=True)
class WebConfig:
    """Search-provider and page-fetch settings.

    Relevant environment variables:
        - `WEB_SEARCH_PROVIDER`
        - `SEARCH_API_KEY` (falls back to `BING_SUBSCRIPTION_KEY`)
        - `SEARCH_ENDPOINT`
        - `WEB_TIMEOUT_SECONDS`
        - `WEB_RETRY_ATTEMPTS`
        - `WEB_BACKOFF_SECONDS`
        - `WEB_USER_AGENT`
        - `WEB_MAX_CHARS`
    """

    provider: str = "bing"
    search_api_key: str = ""
    endpoint: str = ""
    timeout_seconds: float = 12.0
    retry_attempts: int = 3
    backoff_seconds: float = 0.5
    user_agent: str = "citesearch/1.0"
    max_chars: int = 0

    @classmethod
    def from_env(cls) -> "WebConfig":
        return cls(
            provider=os.getenv("WEB_SEARCH_PROVIDER", "bing").strip().lower(),
            search_api_key=(
                os.getenv("SEARCH_API_KEY") or os.getenv("BING_SUBSCRIPTION_KEY") or ""
            ).strip(),
            endpoint=os.getenv("SEARCH_ENDPOINT", "").strip(),
            timeout_seconds=float(os.getenv("WEB_TIMEOUT_SECONDS", "12")),
            retry_attempts=int(os.getenv("WEB_RETRY_ATTEMPTS", "3")),
            backoff_seconds=float(os.getenv("WEB_BACKOFF_SECONDS", "0.5")),
            user_agent=os.getenv("WEB_USER_AGENT", "citesearch/1.0").strip(),
            max_chars=int(os.getenv("WEB_MAX_CHARS", "0")),
        )


@dataclass(frozen=True)
class SearchHit:
    """One provider result: display title and page URL."""

    title: str
    url: str


class _RetryingHttpClient:
    """Shared HTTP transport with retry/backoff for web collaborators.

    Args:
        config: Network configuration.
        transport: Optional `httpx` transport override (tests, proxies).
    """

    def __init__(self, config: WebConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    async def _request_text_with_retry(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> str:
        """Execute an HTTP request with retry/backoff for transient failures.

        Returns:
            Response body text.

        Retry policy:
            Retries statuses `429,500,502,503,504` and transport errors up to
            `retry_attempts` using exponential backoff.

        Raises:
            httpx.HTTPStatusError: Non-retryable status, or retryable status
                after exhaustion.
            httpx.RequestError: Transport failure after exhaustion.
        """
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(
                    timeout=self.config.timeout_seconds,
                    follow_redirects=True,
                    headers=headers,
                    transport=self._transport,
                ) as client:
                    response = await client.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                    )

                if response.status_code in RETRYABLE_STATUSES and attempt < attempts - 1:
                    logger.debug("Retrying %s %s after status %d", method, url, response.status_code)
                    await asyncio.sleep(self._backoff(attempt))
                    continue

                response.raise_for_status()
                return response.text

            except httpx.RequestError:
                if attempt < attempts - 1:
                    logger.debug("Retrying %s %s after transport error", method, url)
                    await asyncio.sleep(self._backoff(attempt))
                    continue
                raise

        raise RuntimeError(f"retry loop exited without a response for url={url}")

    def _default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json, text/html;q=0.9,*/*;q=0.8",
            "User-Agent": self.config.user_agent,
        }

    def _backoff(self, attempt: int) -> float:
        return self.config.backoff_seconds * (2 ** attempt)

    @staticmethod
    def _is_http_url(url: str) -> bool:
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


# =========================================================
# SEARCH PROVIDER
# =========================================================

class WebSearchClient(_RetryingHttpClient):
    """Search-provider client returning ordered `SearchHit` lists.

    Raises:
        ConfigurationError: Unknown provider, or missing API key for a provider
            that requires one.
    """

    def __init__(self, config: WebConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(config, transport)
        if config.provider not in PROVIDER_ENDPOINTS:
            raise ConfigurationError(f"Unsupported WEB_SEARCH_PROVIDER: {config.provider}")
        if config.provider not in KEYLESS_PROVIDERS and not config.search_api_key:
            raise ConfigurationError(f"SEARCH_API_KEY not configured for provider {config.provider}")
        self.endpoint = config.endpoint or PROVIDER_ENDPOINTS[config.provider]

    async def search(self, query: str, limit: int) -> list[SearchHit]:
        """Run one provider query.

        Args:
            query: Search text.
            limit: Maximum hits returned.

        Returns:
            Hits in provider order, restricted to unique HTTP(S) URLs.

        Raises:
            ProviderError: Transport failure, non-success status, or a body that
                is not a JSON object.
        """
        call = f"{self.config.provider} search"
        try:
            body = await self._search(query, limit)
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"request failed with status code {exc.response.status_code}",
                call=call,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{exc.__class__.__name__}: {exc}", call=call) from exc

        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise ProviderError("response is not valid JSON", call=call) from exc
        if not isinstance(data, dict):
            raise ProviderError("response is not a JSON object", call=call)

        hits = self._unique_http_hits(self._parse_search_results(data), limit)
        logger.info("Search returned %d results for provider=%s", len(hits), self.config.provider)
        logger.debug("Raw search payload size: %d bytes", len(body))
        return hits

    async def _search(self, query: str, limit: int) -> str:
        provider = self.config.provider
        headers = self._default_headers()

        if provider == "tavily":
            json_body = {
                "api_key": self.config.search_api_key,
                "query": query,
                "search_depth": "advanced",
                "max_results": limit,
            }
            return await self._request_text_with_retry(
                "POST",
                self.endpoint,
                headers={**headers, "Content-Type": "application/json"},
                json_body=json_body,
            )

        if provider == "serpapi":
            params = {
                "engine": "google",
                "q": query,
                "num": limit,
                "api_key": self.config.search_api_key,
            }
        elif provider == "brave":
            params = {"q": query, "count": limit}
            headers["X-Subscription-Token"] = self.config.search_api_key
        elif provider in ("searxng", "duckduckgo"):
            params = {"q": query, "format": "json"}
            if provider == "duckduckgo":
                params["no_html"] = 1
        else:
            params = {"mkt": "en-US", "q": query, "count": limit}
            headers["Ocp-Apim-Subscription-Key"] = self.config.search_api_key

        return await self._request_text_with_retry("GET", self.endpoint, headers=headers, params=params)

    def _parse_search_results(self, data: dict[str, Any]) -> list[SearchHit]:
        """Extract `(title, url)` candidates from a provider payload.

        A payload without the provider's result list yields no hits.
        """
        provider = self.config.provider

        if provider == "bing":
            candidates = (data.get("webPages") or {}).get("value", [])
            return self._hits(candidates, title_key="name", url_key="url")

        if provider == "serpapi":
            return self._hits(data.get("organic_results", []), title_key="title", url_key="link")

        if provider == "brave":
            candidates = (data.get("web") or {}).get("results", [])
            return self._hits(candidates, title_key="title", url_key="url")

        if provider == "duckduckgo":
            flattened: list[dict[str, Any]] = []
            for item in data.get("RelatedTopics", []) or []:
                if not isinstance(item, dict):
                    continue
                if "Topics" in item:
                    flattened.extend(t for t in item.get("Topics") or [] if isinstance(t, dict))
                else:
                    flattened.append(item)
            return self._hits(flattened, title_key="Text", url_key="FirstURL")

        # searxng, tavily
        return self._hits(data.get("results", []), title_key="title", url_key="url")

    @staticmethod
    def _hits(candidates: Any, title_key: str, url_key: str) -> list[SearchHit]:
        if not isinstance(candidates, list):
            return []
        hits = []
        for item in candidates:
            if not isinstance(item, dict):
                continue
            url = str(item.get(url_key) or "").strip()
            if not url:
                continue
            title = str(item.get(title_key) or "").strip() or url
            hits.append(SearchHit(title=title, url=url))
        return hits

    def _unique_http_hits(self, hits: list[SearchHit], limit: int) -> list[SearchHit]:
        """Keep first-seen HTTP(S) hits per normalized URL, capped at `limit`."""
        out: list[SearchHit] = []
        seen: set[str] = set()

        for hit in hits:
            if not self._is_http_url(hit.url):
                continue
            key = normalize_url(hit.url)
            if key in seen:
                continue
            seen.add(key)
            out.append(hit)
            if len(out) >= limit:
                break

        return out


# =========================================================
# SCRAPER
# =========================================================

class PageScraper(_RetryingHttpClient):
    """Fetch a page and extract sanitized main text."""

    _INJECTION_PATTERNS = (
        r"ignore\s+previous\s+instructions?",
        r"\bsystem\s*:",
        r"\bassistant\s*:",
        r"\buser\s*:",
    )

    async def fetch_and_extract(self, url: str) -> str:
        """Fetch `url` and return its extracted text.

        Raises:
            FetchError: Non-HTTP URL, transport failure, or non-success status.
            ParseError: Empty body or no extractable main text.
        """
        call = f"GET {url}"
        if not self._is_http_url(url):
            raise FetchError("not an http(s) URL", call=call)

        logger.debug("Scraping content from URL: %s", url)
        try:
            raw_html = await self._request_text_with_retry("GET", url, headers=self._default_headers())
        except httpx.HTTPStatusError as exc:
            raise FetchError(f"status code {exc.response.status_code}", call=call) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"{exc.__class__.__name__}: {exc}", call=call) from exc

        if not raw_html.strip():
            raise ParseError("empty document", call=call)

        cleaned = self._clean_extracted_text(raw_html, call)
        if not cleaned:
            raise ParseError("no extractable text", call=call)
        return cleaned

    def _clean_extracted_text(self, raw_html: str, call: str) -> str:
        try:
            extracted = trafilatura.extract(
                raw_html,
                include_comments=False,
                include_tables=False,
                include_images=False,
                include_links=False,
                favor_precision=True,
                output_format="txt",
            ) or ""
        except (ValueError, TypeError, LookupError) as exc:
            raise ParseError(f"malformed document: {exc}", call=call) from exc

        if not extracted.strip():
            return ""

        cleaned = self._strip_html_js(extracted)
        cleaned = self._remove_prompt_injection_tokens(cleaned)
        cleaned = self._normalize_whitespace(cleaned)

        if self.config.max_chars > 0 and len(cleaned) > self.config.max_chars:
            cleaned = cleaned[: self.config.max_chars].rstrip()

        return cleaned

    @staticmethod
    def _strip_html_js(text: str) -> str:
        """Remove markup and script/style remnants left in extracted text."""
        text = re.sub(r"<script[^>]*>.*?</script>", " ", text, flags=re.IGNORECASE | re.DOTALL)
        text = re.sub(r"<style[^>]*>.*?</style>", " ", text, flags=re.IGNORECASE | re.DOTALL)
        text = re.sub(r"<[^>]+>", " ", text)
        text = re.sub(r"\bjavascript\s*:", " ", text, flags=re.IGNORECASE)
        return html.unescape(text)

    def _remove_prompt_injection_tokens(self, text: str) -> str:
        cleaned = text
        for pattern in self._INJECTION_PATTERNS:
            cleaned = re.sub(pattern, " ", cleaned, flags=re.IGNORECASE)
        return cleaned

    @staticmethod
    def _normalize_whitespace(text: str) -> str:
        text = text.replace("\r", "\n")
        text = re.sub(r"\n{3,}", "\n\n", text)
        text = re.sub(r"[\t\x0b\x0c ]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        return text.strip()
