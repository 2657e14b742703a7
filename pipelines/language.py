"""Language detection of extracted texts.

Texts are streamed from the store and sent to the remote language detector
a batch at a time. The top ranked language code is written back to the
text record.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from observability.prometheus_metrics import language_detections
from services.shared.store import DocumentStore

from .concurrent import concurrent_map

logger = logging.getLogger(__name__)


class LanguageDetectionError(Exception):
    """The language detector returned an unusable response."""


class LanguageDetectorClient:
    """HTTP client for the language detection service."""

    def __init__(self, base_url: str, request_timeout: int = 30, max_connections: int = 10):
        self.base_url = base_url.rstrip('/')
        self.request_timeout = request_timeout
        self.max_connections = max_connections
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        connector = aiohttp.TCPConnector(limit=self.max_connections)
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        self.session = aiohttp.ClientSession(connector=connector, timeout=timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def detect_language(self, text: str) -> List[Dict[str, Any]]:
        """Return detected languages, best match first."""
        if self.session is None:
            raise RuntimeError("Language detector client is not open; use it with 'async with'")

        async with self.session.post(f"{self.base_url}/detect", json={'text': text}) as response:
            response.raise_for_status()
            payload = await response.json()

        languages = payload.get('languages') or []
        if not languages:
            raise LanguageDetectionError("No languages detected")
        return languages


class LanguageDetector:
    """Detects and stores the language of extracted texts."""

    def __init__(self, store: DocumentStore, client: LanguageDetectorClient,
                 concurrency: int = 10, log: Optional[logging.Logger] = None):
        self.store = store
        self.client = client
        self.concurrency = concurrency
        self.log = log or logger

    async def detect_and_update(self, row: Mapping[str, Any], metrics: Dict[str, int]) -> bool:
        """Detect one text's language; failures are logged and skipped."""
        try:
            languages = await self.client.detect_language(row['text'])
            code = languages[0]['code']
            await self.store.update_language(row['warcId'], code)
        except Exception as e:
            self.log.warning(f"language detection failed for warcId {row['warcId']}: {e}")
            language_detections.labels(status="error").inc()
            return False
        metrics[code] = metrics.get(code, 0) + 1
        language_detections.labels(status="success").inc()
        return True

    async def run(self, detect_all: bool = False) -> Dict[str, int]:
        """Detect languages of all texts, or only those lacking a language.

        Returns the number of texts detected per language code.
        """
        metrics: Dict[str, int] = {}
        rows = self.store.iter_extracted_texts(missing_language_only=not detect_all)
        processed = await concurrent_map(rows, lambda row: self.detect_and_update(row, metrics), self.concurrency)
        self.log.info(f"Language detection processed {processed} texts, "
                      f"detected {sum(metrics.values())}")
        return metrics
