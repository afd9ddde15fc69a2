import logging
import re
from datetime import date
from typing import Optional, Dict, Any, List

from library_app.config import settings
from library_app.errors import InvalidState, ServiceUnavailable
from library_app.services.http_client import CatalogHTTPClient, get_http_client
from library_app.validators import TextValidator

logger = logging.getLogger(__name__)

EXTERNAL_SOURCE = "google_books"
# Google Books caps maxResults at 40
MAX_RESULTS_LIMIT = 40
IMAGE_SIZES = ("extraLarge", "large", "medium", "small", "thumbnail")


def _clean_isbn(isbn: str) -> str:
    return isbn.replace("-", "").replace(" ", "").strip()


def normalize_publication_date(value: Optional[str]) -> Optional[str]:
    """Google returns YYYY, YYYY-MM or a full date; store YYYY-MM-DD."""
    if not value:
        return None
    if len(value) == 4 and value.isdigit():
        return f"{value}-01-01"
    if len(value) == 7:
        return f"{value}-01"
    try:
        return date.fromisoformat(value[:10]).isoformat()
    except ValueError:
        return None


def best_cover_image(image_links: Optional[Dict[str, str]]) -> Optional[str]:
    """Largest available cover, served over https without the zoom/curl parameters."""
    if not image_links:
        return None
    url = next((image_links[size] for size in IMAGE_SIZES if image_links.get(size)), None)
    if not url:
        return None
    url = url.replace("http://", "https://")
    url = re.sub(r"&zoom=\d+", "", url)
    return url.replace("&edge=curl", "")


class GoogleBooksService:
    """Service for interacting with the Google Books API"""

    def __init__(self, api_key: Optional[str] = None, client: Optional[CatalogHTTPClient] = None,
                 base_url: Optional[str] = None):
        self.api_key = api_key or settings.google_books_api_key
        self.base_url = (base_url or settings.google_books_base_url).rstrip("/")
        self._client = client

    async def _get_client(self) -> CatalogHTTPClient:
        if self._client is None:
            self._client = await get_http_client()
        return self._client

    async def _make_api_request(self, endpoint: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not settings.enable_google_books:
            raise ServiceUnavailable("Google Books integration is disabled")

        url = f"{self.base_url}/{endpoint}"
        if self.api_key:
            params["key"] = self.api_key

        client = await self._get_client()
        response = await client.get_with_retry(url, params=params)
        if response is None:
            raise ServiceUnavailable("Google Books API is unreachable")

        if response.status_code == 200:
            return response.json()
        if response.status_code == 429:
            logger.warning("Rate limit exceeded for Google Books API")
            raise ServiceUnavailable("Google Books rate limit exceeded")
        logger.error("Google Books request failed: %s - %s", response.status_code, response.text[:200])
        return None

    async def search_by_isbn(self, isbn: str) -> Optional[Dict[str, Any]]:
        """Return the first volume matching ``isbn``, or None."""
        clean_isbn = _clean_isbn(isbn or "")
        if not clean_isbn:
            logger.warning("Empty ISBN provided")
            return None

        response = await self._make_api_request("volumes", {"q": f"isbn:{clean_isbn}", "maxResults": 1})
        items = (response or {}).get("items") or []
        if not items:
            logger.info("Book not found in Google Books: ISBN %s", clean_isbn)
            return None
        return items[0]

    async def search(self, query: str, max_results: int = 10) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            logger.warning("Empty search query provided")
            return []

        params = {"q": query.strip(), "maxResults": min(max_results, MAX_RESULTS_LIMIT)}
        response = await self._make_api_request("volumes", params)
        items = (response or {}).get("items") or []
        logger.info("Found %d Google Books volumes for query: %s", len(items), query)
        return items

    @staticmethod
    def transform_to_book_data(volume: Dict[str, Any]) -> Dict[str, Any]:
        """Map a Google Books volume onto book columns."""
        volume_info = volume.get("volumeInfo")
        if not volume_info:
            raise InvalidState("Volume info is missing")

        isbn10 = None
        isbn13 = None
        for identifier in volume_info.get("industryIdentifiers") or []:
            if identifier.get("type") == "ISBN_10":
                isbn10 = identifier.get("identifier") or None
            elif identifier.get("type") == "ISBN_13":
                isbn13 = identifier.get("identifier") or None

        categories = volume_info.get("categories") or []

        return {
            "title": volume_info.get("title") or "",
            "isbn10": isbn10,
            "isbn13": isbn13,
            "genre": categories[0] if categories else None,
            "publication_date": normalize_publication_date(volume_info.get("publishedDate")),
            "description": TextValidator.sanitize_text(volume_info.get("description")) or None,
            "cover_image_url": best_cover_image(volume_info.get("imageLinks")),
            "external_source": EXTERNAL_SOURCE,
            "external_id": volume.get("id") or "",
            "external_metadata": {
                "subtitle": volume_info.get("subtitle"),
                "publisher": volume_info.get("publisher"),
                "pageCount": volume_info.get("pageCount"),
                "language": volume_info.get("language"),
                "categories": volume_info.get("categories"),
                "authors": volume_info.get("authors"),
                "averageRating": volume_info.get("averageRating"),
                "ratingsCount": volume_info.get("ratingsCount"),
                "maturityRating": volume_info.get("maturityRating"),
                "previewLink": volume_info.get("previewLink"),
                "infoLink": volume_info.get("infoLink"),
                "canonicalVolumeLink": volume_info.get("canonicalVolumeLink"),
                "saleInfo": volume.get("saleInfo"),
                "accessInfo": volume.get("accessInfo"),
            },
        }
