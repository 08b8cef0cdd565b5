from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; GrantIngest/1.0)",
    "Accept": "application/json",
}

MAX_PAGES = 500


class HttpFetchClient:
    """
    Paginated JSON fetcher for one upstream opportunities API.

    Expects GET {base_url}/sources/{source_id}/opportunities?page=N&pageSize=M
    returning {"results": [...], "totalResults": T}. Transport errors are
    raised as-is; the call guard classifies and retries them.
    """

    def __init__(
        self,
        base_url: str,
        page_size: int = 100,
        timeout: float = 40,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        max_pages: int = MAX_PAGES,
    ):
        self.base_url = base_url.rstrip('/')
        self.page_size = page_size
        self.timeout = timeout
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self.session = session or requests.Session()
        self.max_pages = max_pages

    def fetch_page(self, source_id: str, page: int) -> Dict[str, Any]:
        resp = self.session.get(
            f"{self.base_url}/sources/{source_id}/opportunities",
            params={"page": str(page), "pageSize": str(self.page_size)},
            headers=self.headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def fetch_all(self, source_id: str) -> List[Dict[str, Any]]:
        all_items: List[Dict[str, Any]] = []
        page = 1

        while True:
            logger.info(f"Fetching {source_id} page {page}...")
            try:
                data = self.fetch_page(source_id, page)
            except requests.RequestException as e:
                logger.error(f"API request failed for {source_id} on page {page}: {e}")
                raise

            results = data.get("results") or data.get("opportunities") or []
            if not results:
                logger.info(f"No more results at page {page}. Stopping.")
                break

            all_items.extend(results)

            total_results = data.get("totalResults", 0)
            total_pages = (total_results + self.page_size - 1) // self.page_size
            logger.info(
                f"Page {page}/{total_pages}: "
                f"fetched {len(results)} items (total: {len(all_items)}/{total_results})"
            )

            if page >= total_pages:
                break
            page += 1

            if page > self.max_pages:
                logger.warning(f"Hit safety limit of {self.max_pages} pages. Stopping.")
                break

        return all_items

    async def fetch(self, source_id: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.fetch_all, source_id)
