"""
DuckDuckGo web search service for the research and planning stages.
Returns career-transition stories, skill requirements and learning resources.
"""

import asyncio
import logging
import warnings

from duckduckgo_search import DDGS

from cara.config import settings
from cara.graph.state import Document

logger = logging.getLogger(__name__)

# Suppress the rename warning from duckduckgo_search
warnings.filterwarnings("ignore", message=".*has been renamed.*")


class SearchClient:
    def __init__(self, timeout: float = settings.request_timeout, region: str = "wt-wt") -> None:
        self.timeout = timeout
        self.region = region

    async def search(self, query: str, max_results: int = 5) -> list[Document]:
        """
        Search DuckDuckGo for pages relevant to a career-transition query.
        Runs the sync DDGS call in a thread pool to avoid blocking the event loop.
        Failures and timeouts are logged and yield an empty list.
        """
        def _sync_search() -> list[Document]:
            try:
                results: list[Document] = []
                with DDGS() as ddgs:
                    for r in ddgs.text(query, max_results=max_results, region=self.region):
                        body = r.get("body", "")
                        if body:
                            results.append(
                                Document(title=r.get("title", ""), body=body, url=r.get("href", ""))
                            )
                return results
            except Exception as exc:
                logger.error("DuckDuckGo search failed: %s", exc)
                return []

        try:
            return await asyncio.wait_for(asyncio.to_thread(_sync_search), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("DuckDuckGo search timed out after %.0fs: %s", self.timeout, query)
            return []
