import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from circdesk.config import settings
from circdesk.errors import ExternalServiceError

logger = logging.getLogger(__name__)

API_URL = "https://www.googleapis.com/books/v1/volumes"


@dataclass
class GoogleBookData:
    """Bibliographic data for one volume returned by Google Books"""
    isbn: str
    title: str
    authors: List[str] = field(default_factory=list)
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    page_count: Optional[int] = None
    language: Optional[str] = None
    thumbnail_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isbn": self.isbn,
            "title": self.title,
            "authors": self.authors,
            "publisher": self.publisher,
            "published_date": self.published_date,
            "categories": self.categories,
            "page_count": self.page_count,
            "language": self.language,
            "thumbnail_url": self.thumbnail_url,
        }


def normalize_isbn(raw: str) -> str:
    return re.sub(r"[^0-9Xx]", "", raw or "").upper()


class GoogleBooksService:
    """Looks up title metadata by ISBN."""

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None, enabled: Optional[bool] = None):
        self.api_key = api_key or settings.google_books_api_key
        self.timeout = timeout or settings.google_books_timeout
        self.enabled = settings.enable_google_books if enabled is None else enabled

    def is_available(self) -> bool:
        return self.enabled

    def _parse_volume(self, item: Dict[str, Any], isbn: str) -> Optional[GoogleBookData]:
        info = item.get("volumeInfo") or {}
        title = info.get("title")
        if not title:
            return None
        identifiers = {ident.get("type"): ident.get("identifier") for ident in info.get("industryIdentifiers", [])}
        images = info.get("imageLinks") or {}
        thumbnail = None
        for key in ("extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail"):
            if images.get(key):
                thumbnail = images[key].replace("http://", "https://")
                break
        return GoogleBookData(
            isbn=identifiers.get("ISBN_13") or identifiers.get("ISBN_10") or isbn,
            title=title,
            authors=info.get("authors", []),
            publisher=info.get("publisher"),
            published_date=info.get("publishedDate"),
            categories=info.get("categories", []),
            page_count=info.get("pageCount"),
            language=info.get("language"),
            thumbnail_url=thumbnail,
        )

    def lookup_isbn(self, isbn: str) -> Optional[GoogleBookData]:
        """Return the first volume matching the ISBN, or None when nothing matches."""
        if not self.is_available():
            logger.info("Google Books lookup disabled (ENABLE_GOOGLE_BOOKS)")
            return None

        clean = normalize_isbn(isbn)
        if not clean:
            logger.warning("Empty ISBN provided")
            return None

        params: Dict[str, Any] = {"q": f"isbn:{clean}", "maxResults": 1}
        if self.api_key:
            params["key"] = self.api_key

        try:
            response = httpx.get(API_URL, params=params, timeout=self.timeout)
        except httpx.RequestError as e:
            logger.error(f"Google Books request failed: {e}")
            raise ExternalServiceError(f"Google Books unavailable: {e}") from e

        if response.status_code != 200:
            logger.warning(f"Google Books lookup for {clean} returned {response.status_code}")
            return None

        data = response.json()
        if not data.get("totalItems") or not data.get("items"):
            return None
        return self._parse_volume(data["items"][0], clean)
