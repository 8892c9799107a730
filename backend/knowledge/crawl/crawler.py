"""
Web Crawler — the crawl-and-extract step run for each ingest job.

Per registered domain:
  1. seed https://<domain>/ plus a few well-known section paths
  2. breadth-first up to crawl_depth, internal links only
     (same host, or a subdomain of the registered domain)
  3. at most max_pages pages, a fixed delay between fetches
  4. text/html only; boilerplate tags stripped by parse_html()
  5. each page is folded into a `web_crawl` Document keyed by source_url:
       same text hash as last time  → unchanged, skipped
       new or changed               → text written to canonical storage,
                                      document pending, processing queued

Per-page errors are counted in the stats, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter, deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urldefrag, urljoin, urlsplit
from uuid import UUID

import httpx

from knowledge.processing.chunking import content_hash
from knowledge.processing.extractor import parse_html
from knowledge.repositories.base import DocumentRecord, DomainRecord, IngestJobRecord, UnitOfWork
from knowledge.services.registry import DocumentRegistry
from knowledge.storage.s3 import canonical_key

logger = logging.getLogger(__name__)

SEED_PATHS = ("/", "/about", "/news", "/reports", "/our-business")
STAT_KEYS  = ("pages_queued", "pages_processed", "pages_unchanged", "errors")

_SKIP_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".zip",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".mp4", ".mp3", ".css", ".js",
)
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def normalize_url(url: str) -> str:
    url, _ = urldefrag(url)
    parts = urlsplit(url)
    path = parts.path.rstrip("/") or "/"
    query = f"?{parts.query}" if parts.query else ""
    return f"{parts.scheme}://{parts.netloc.lower()}{path}{query}"


def is_internal(url: str, domain: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    base = domain.removeprefix("www.")
    return host == base or host.endswith(f".{base}")


def page_file_name(url: str) -> str:
    """https://example.com/about/team → web_example-com_about-team_<hash8>.txt"""
    parts = urlsplit(url)
    host = _SLUG_RE.sub("-", (parts.hostname or "site").lower()).strip("-")
    path = _SLUG_RE.sub("-", parts.path.lower()).strip("-") or "home"
    return f"web_{host}_{path[:80]}_{content_hash(url)[:8]}.txt"


class WebCrawler:
    """
    Usage:
        crawler = WebCrawler.from_settings(uow, storage, publisher)
        stats   = await crawler.crawl_tenant(tenant_id, domains, job)

    Pass `client` to reuse an httpx.AsyncClient (tests hand in one built
    on httpx.MockTransport).
    """

    def __init__(
        self,
        uow:        UnitOfWork,
        storage,
        publisher,
        *,
        bucket:     str,
        client:     httpx.AsyncClient | None = None,
        max_pages:  int = 50,
        max_links:  int = 10,
        delay:      float = 2.0,
        timeout:    float = 30.0,
        user_agent: str = "KnowledgeCrawler/1.0",
        sleep=asyncio.sleep,
    ) -> None:
        self._uow        = uow
        self._storage    = storage
        self._publisher  = publisher
        self._bucket     = bucket
        self._client     = client
        self._max_pages  = max_pages
        self._max_links  = max_links
        self._delay      = delay
        self._timeout    = timeout
        self._user_agent = user_agent
        self._sleep      = sleep
        self._registry   = DocumentRegistry(uow)

    @classmethod
    def from_settings(cls, uow: UnitOfWork, storage, publisher, **overrides) -> "WebCrawler":
        from knowledge.core.config import settings

        options = dict(
            bucket=settings.storage_bucket,
            max_pages=settings.crawl_max_pages_per_domain,
            max_links=settings.crawl_max_links_per_page,
            delay=settings.crawl_request_delay,
            timeout=settings.crawl_request_timeout,
            user_agent=settings.crawl_user_agent,
        )
        options.update(overrides)
        return cls(uow, storage, publisher, **options)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def crawl_tenant(
        self,
        tenant_id: UUID,
        domains:   list[DomainRecord],
        job:       IngestJobRecord | None = None,
    ) -> dict[str, Any]:
        totals: Counter[str] = Counter()
        async with self._session() as client:
            for domain in domains:
                try:
                    totals.update(await self.crawl_domain(tenant_id, domain, client=client))
                except Exception:
                    logger.exception("Domain crawl failed | tenant=%s domain=%s", tenant_id, domain.domain)
                    totals["errors"] += 1

        stats = {key: totals.get(key, 0) for key in STAT_KEYS}
        stats["domains"] = len(domains)
        logger.info(
            "Tenant crawl | tenant=%s job=%s %s",
            tenant_id, job.id if job else None,
            " ".join(f"{k}={v}" for k, v in stats.items()),
        )
        return stats

    async def crawl_domain(
        self,
        tenant_id: UUID,
        domain:    DomainRecord,
        *,
        client:    httpx.AsyncClient | None = None,
    ) -> dict[str, int]:
        if client is None:
            async with self._session() as own:
                return await self.crawl_domain(tenant_id, domain, client=own)

        stats: Counter[str] = Counter({key: 0 for key in STAT_KEYS})
        root = f"https://{domain.domain}"
        queue: deque[tuple[str, int]] = deque(
            (normalize_url(urljoin(root, path)), 0) for path in SEED_PATHS
        )
        seen = {url for url, _ in queue}
        fetched = 0

        while queue and fetched < self._max_pages:
            url, depth = queue.popleft()
            if fetched:
                await self._sleep(self._delay)
            fetched += 1

            try:
                html = await self._fetch(client, url)
            except httpx.HTTPError as exc:
                logger.warning("Fetch failed | url=%s error=%s", url, exc)
                stats["errors"] += 1
                continue
            if html is None:
                continue

            try:
                soup, page = parse_html(html)
                stats["pages_processed"] += 1
                if depth < domain.crawl_depth:
                    for link in self._links(soup, url, domain.domain):
                        if link not in seen:
                            seen.add(link)
                            queue.append((link, depth + 1))
                if not page.text.strip():
                    continue
                outcome = await self._fold_page(tenant_id, url, page.title, page.text)
                stats[outcome] += 1
            except Exception:
                logger.exception("Page ingest failed | tenant=%s url=%s", tenant_id, url)
                await self._uow.rollback()
                stats["errors"] += 1

        logger.info(
            "Domain crawl | tenant=%s domain=%s fetched=%d queued=%d unchanged=%d errors=%d",
            tenant_id, domain.domain, fetched,
            stats["pages_queued"], stats["pages_unchanged"], stats["errors"],
        )
        return dict(stats)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=self._timeout,
            headers={"User-Agent": self._user_agent},
            follow_redirects=True,
        ) as client:
            yield client

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> str | None:
        """Page HTML, or None for missing / non-HTML responses."""
        response = await client.get(url)
        if response.status_code >= 500:
            response.raise_for_status()
        if response.status_code >= 400:
            logger.debug("Page skipped | url=%s status=%d", url, response.status_code)
            return None
        if "text/html" not in response.headers.get("content-type", ""):
            return None
        return response.text

    def _links(self, soup, page_url: str, domain: str) -> list[str]:
        links: list[str] = []
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if not href or href.startswith(("mailto:", "tel:", "javascript:", "#")):
                continue
            url = normalize_url(urljoin(page_url, href))
            if not url.startswith(("http://", "https://")):
                continue
            if urlsplit(url).path.lower().endswith(_SKIP_EXTENSIONS):
                continue
            if is_internal(url, domain) and url not in links:
                links.append(url)
            if len(links) >= self._max_links:
                break
        return links

    async def _fold_page(self, tenant_id: UUID, url: str, title: str, text: str) -> str:
        """Returns the stats key the page counts under."""
        digest   = content_hash(text)
        existing = await self._uow.documents.find_by_source_url(tenant_id, url)
        if existing is not None and existing.metadata.get("html_hash") == digest:
            return "pages_unchanged"

        file_name = existing.file_name if existing else page_file_name(url)
        key = canonical_key(tenant_id, file_name)
        await self._storage.put_object(self._bucket, key, text.encode("utf-8"), "text/plain")

        metadata = {"html_hash": digest, "crawled_url": url}
        if existing is not None:
            await self._uow.documents.update(
                tenant_id, existing.id,
                title=title or existing.title,
                file_path=key,
                metadata={**existing.metadata, **metadata},
            )
            doc = await self._registry.mark_pending(tenant_id, existing.id)
        else:
            doc = await self._registry.create(DocumentRecord(
                tenant_id=tenant_id,
                file_name=file_name,
                title=title or url,
                file_path=key,
                mime_type="text/plain",
                document_type="web_crawl",
                source_url=url,
                metadata=metadata,
            ))
        await self._uow.commit()

        await self._publisher.publish_processing(tenant_id, doc.id, force_reprocess=False)
        return "pages_queued"


def tenant_crawl_scope(uow_factory, storage, publisher, *, client: httpx.AsyncClient | None = None):
    """
    Scope factory for CrawlScheduler(tenant_scope=...): every tenant of a
    nightly run gets its own unit of work and a crawler bound to it.
    """

    @asynccontextmanager
    async def scope() -> AsyncIterator[tuple[UnitOfWork, Any]]:
        async with uow_factory() as uow:
            crawler = WebCrawler.from_settings(uow, storage, publisher, client=client)
            yield uow, crawler.crawl_tenant

    return scope
