"""Omnivore GraphQL API client."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from vaultsync.core.errors import VaultSyncError
from vaultsync.providers.content_types import (
    Highlight,
    HighlightType,
    Item,
    Label,
    PageType,
)

logger = logging.getLogger(__name__)

CLIENT_NAME = "vaultsync"

FILTER_QUERIES = {
    "ALL": "in:all",
    "HIGHLIGHTS": "in:all has:highlights",
    "ARCHIVED": "in:archive",
    "LIBRARY": "in:library",
}

SEARCH_QUERY = """
query Search($after: String, $first: Int, $query: String, $includeContent: Boolean, $format: String) {
  search(first: $first, after: $after, query: $query, includeContent: $includeContent, format: $format) {
    ... on SearchSuccess {
      edges {
        node {
          id
          title
          slug
          siteName
          originalArticleUrl
          url
          image
          author
          updatedAt
          description
          savedAt
          pageType
          content
          publishedAt
          readAt
          wordsCount
          isArchived
          readingProgressPercent
          archivedAt
          highlights {
            id
            quote
            annotation
            patch
            updatedAt
            type
            highlightPositionPercent
            highlightPositionAnchorIndex
            labels {
              name
            }
            color
          }
          labels {
            name
          }
        }
      }
      pageInfo {
        hasNextPage
      }
    }
    ... on SearchError {
      errorCodes
    }
  }
}
"""

DELETE_MUTATION = """
mutation SetBookmarkArticle($input: SetBookmarkArticleInput!) {
  setBookmarkArticle(input: $input) {
    ... on SetBookmarkArticleSuccess {
      bookmarkedArticle {
        id
      }
    }
    ... on SetBookmarkArticleError {
      errorCodes
    }
  }
}
"""


class OmnivoreError(VaultSyncError):
    """Base exception for Omnivore API errors."""


class OmnivoreAuthError(OmnivoreError):
    """Authentication failed."""


class OmnivoreRateLimitError(OmnivoreError):
    """Rate limit exceeded after all retries."""


class AttachmentError(OmnivoreError):
    """An attachment could not be downloaded."""


class AttachmentTimeoutError(AttachmentError):
    """An attachment was still not ready when the overall timeout expired."""


def get_query_from_filter(filter: str, custom_query: str = "") -> str:
    """Search query for a configured filter. ADVANCED uses the custom query as-is."""
    if filter == "ADVANCED":
        return custom_query.strip()
    try:
        return FILTER_QUERIES[filter]
    except KeyError:
        raise ValueError(f"Unknown filter: {filter}") from None


def build_search_query(query: str, updated_since: str | None = None) -> str:
    """``updated:<ts> sort:saved-asc <query>``; the updated term only when set."""
    prefix = f"updated:{updated_since} " if updated_since else ""
    return f"{prefix}sort:saved-asc {query}".strip()


def _labels(nodes: list[dict] | None) -> tuple[Label, ...]:
    return tuple(Label(name=n["name"]) for n in nodes or [] if n.get("name"))


def parse_highlight(node: dict) -> Highlight:
    """Convert a GraphQL highlight node to a Highlight DTO."""
    try:
        highlight_type = HighlightType(node.get("type") or "HIGHLIGHT")
    except ValueError:
        highlight_type = HighlightType.HIGHLIGHT
    return Highlight(
        id=node["id"],
        type=highlight_type,
        quote=node.get("quote"),
        annotation=node.get("annotation"),
        patch=node.get("patch"),
        updated_at=node.get("updatedAt"),
        labels=_labels(node.get("labels")),
        color=node.get("color"),
        highlight_position_percent=node.get("highlightPositionPercent"),
        highlight_position_anchor_index=node.get("highlightPositionAnchorIndex"),
    )


def parse_item(node: dict) -> Item:
    """Convert a GraphQL search node to an Item DTO."""
    return Item(
        id=node["id"],
        title=node.get("title") or "Untitled",
        url=node.get("url") or "",
        saved_at=node["savedAt"],
        page_type=PageType.parse(node.get("pageType")),
        slug=node.get("slug") or "",
        original_url=node.get("originalArticleUrl"),
        site_name=node.get("siteName"),
        author=node.get("author"),
        description=node.get("description"),
        image=node.get("image"),
        published_at=node.get("publishedAt"),
        read_at=node.get("readAt"),
        archived_at=node.get("archivedAt"),
        updated_at=node.get("updatedAt"),
        labels=_labels(node.get("labels")),
        highlights=tuple(parse_highlight(h) for h in node.get("highlights") or []),
        content=node.get("content"),
        reading_progress_percent=node.get("readingProgressPercent") or 0,
        words_count=node.get("wordsCount"),
        is_archived=bool(node.get("isArchived")),
    )


class OmnivoreClient:
    """Async client for the Omnivore GraphQL API."""

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Authorization": api_key,
                "X-OmnivoreClient": CLIENT_NAME,
            },
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OmnivoreClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request_with_retry(
        self,
        payload: dict[str, Any],
        *,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ) -> httpx.Response:
        """POST a GraphQL payload with exponential backoff retry on 429.

        Raises:
            OmnivoreRateLimitError: If rate limited after all retries
            OmnivoreAuthError: If authentication fails
            OmnivoreError: On transport errors and other HTTP errors
        """
        delay = base_delay

        for attempt in range(max_retries + 1):
            try:
                resp = await self._client.post(self._endpoint, json=payload)
            except httpx.HTTPError as e:
                raise OmnivoreError(f"Request to {self._endpoint} failed: {e}") from e

            if resp.status_code == 401:
                raise OmnivoreAuthError("Invalid Omnivore API key")

            if resp.status_code == 429:
                if attempt == max_retries:
                    raise OmnivoreRateLimitError(
                        f"Rate limit exceeded after {max_retries} retries"
                    )

                # Check Retry-After header
                retry_after = resp.headers.get("Retry-After")
                if retry_after:
                    try:
                        wait_time = float(retry_after)
                    except ValueError:
                        wait_time = delay
                else:
                    wait_time = delay

                wait_time = min(wait_time, max_delay)
                logger.warning(
                    f"Rate limited (429). Waiting {wait_time:.1f}s "
                    f"(attempt {attempt + 1}/{max_retries + 1})"
                )
                await asyncio.sleep(wait_time)
                delay = min(delay * 2, max_delay)  # Exponential backoff
                continue

            if resp.is_error:
                raise OmnivoreError(f"Omnivore API returned HTTP {resp.status_code}")
            return resp

        raise OmnivoreRateLimitError("Rate limit handling failed")

    async def _graphql(self, query: str, variables: dict[str, Any], field: str) -> dict[str, Any]:
        resp = await self._request_with_retry({"query": query, "variables": variables})
        try:
            body = resp.json()
        except ValueError as e:
            raise OmnivoreError("Omnivore API returned invalid JSON") from e
        if body.get("errors"):
            raise OmnivoreError(f"GraphQL error: {body['errors']}")
        result = (body.get("data") or {}).get(field)
        if not isinstance(result, dict):
            raise OmnivoreError(f"GraphQL response has no {field}")
        if result.get("errorCodes"):
            codes = result["errorCodes"]
            if "UNAUTHORIZED" in codes:
                raise OmnivoreAuthError("Invalid Omnivore API key")
            raise OmnivoreError(f"{field} failed: {', '.join(codes)}")
        return result

    async def search(
        self,
        *,
        after: int = 0,
        first: int = 50,
        updated_since: str | None = None,
        query: str = "",
        include_content: bool = False,
        format: str = "markdown",
    ) -> tuple[list[Item], bool]:
        """Fetch one page of items saved-ascending.

        Returns:
            (items, has_next_page)
        """
        result = await self._graphql(
            SEARCH_QUERY,
            {
                "after": str(after),
                "first": first,
                "query": build_search_query(query, updated_since),
                "includeContent": include_content,
                "format": format,
            },
            "search",
        )
        items = []
        for edge in result.get("edges") or []:
            node = edge.get("node") or {}
            try:
                items.append(parse_item(node))
            except KeyError as e:
                logger.warning(f"Skipping search result without {e}: {node.get('id')}")
        has_next_page = bool((result.get("pageInfo") or {}).get("hasNextPage"))
        logger.debug(f"Fetched {len(items)} items after={after} (more: {has_next_page})")
        return items, has_next_page

    async def delete(self, item_id: str) -> bool:
        """Remove an item from the library. True if the service confirmed it."""
        result = await self._graphql(
            DELETE_MUTATION,
            {"input": {"articleID": item_id, "bookmark": False}},
            "setBookmarkArticle",
        )
        bookmarked = result.get("bookmarkedArticle") or {}
        return bookmarked.get("id") == item_id

    async def download_attachment(
        self,
        url: str,
        *,
        retry_delay: float = 5.0,
        timeout: float = 120.0,
    ) -> bytes:
        """Download a file attachment.

        The file may not be ready right after saving; a 404 is retried every
        ``retry_delay`` seconds until ``timeout`` expires.

        Raises:
            AttachmentTimeoutError: still not available after ``timeout``
            AttachmentError: any other failure
        """

        async def _poll() -> bytes:
            while True:
                try:
                    resp = await self._client.get(url, headers={"Accept": "application/pdf"})
                except httpx.HTTPError as e:
                    raise AttachmentError(f"Download of {url} failed: {e}") from e
                if resp.status_code == 404:
                    logger.debug(f"Attachment not ready, retrying in {retry_delay}s: {url}")
                    await asyncio.sleep(retry_delay)
                    continue
                if resp.is_error:
                    raise AttachmentError(f"Download of {url} failed: HTTP {resp.status_code}")
                return resp.content

        try:
            return await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AttachmentTimeoutError(f"Timed out after {timeout}s downloading {url}") from e
