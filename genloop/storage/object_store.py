"""
Supabase Storage REST client.

Uploads, lists and deletes objects in one bucket. Every call goes through
TransientRetryClient so rate limiting and overload are retried like the
generation calls.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from genloop.core.errors import FatalHttp
from genloop.core.transport import RequestSpec, TransientRetryClient

from .models import StorageObject

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "photos"
LIST_PAGE_SIZE = 1000

# Supabase reports an existing key as 400 with a 409 body, or 409 directly
_CONFLICT_STATUSES = (400, 409)

# Missing keys come back as 400 with a not_found body, or 404
_MISSING_STATUSES = (400, 404)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse a Supabase ISO timestamp; missing values sort as oldest."""
    if not value:
        return _EPOCH
    text = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unparseable created_at {value!r}, treating as oldest")
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_folder(entry: Dict[str, Any]) -> bool:
    return entry.get("id") is None and not entry.get("metadata")


class SupabaseObjectStore:
    """Object store backed by the Supabase Storage REST API."""

    def __init__(
        self,
        transport: TransientRetryClient,
        base_url: str,
        api_key: str,
        bucket: str = DEFAULT_BUCKET
    ):
        """Initialize the store client.

        Args:
            transport: Retrying HTTP transport
            base_url: Project URL, e.g. ``https://<ref>.supabase.co``
            api_key: Key attached to every call
            bucket: Bucket holding the artifacts

        Raises:
            ValueError: If base_url, api_key or bucket is empty
        """
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if not bucket or not bucket.strip():
            raise ValueError("bucket is required and cannot be empty")
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bucket = bucket

    def _url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1{path}"

    def _headers(self, content_type: str = "application/json") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
            "Content-Type": content_type,
        }

    def public_url(self, key: str) -> str:
        return self._url(f"/object/public/{self.bucket}/{key}")

    def upload(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        """Upsert an object: POST, then PUT if the key already exists.

        Raises:
            FatalHttp: If the write is rejected for any other reason
            ExhaustedRetries: If the store stays unavailable
        """
        url = self._url(f"/object/{self.bucket}/{key}")
        headers = self._headers(content_type)
        try:
            self.transport.send(RequestSpec("POST", url, data=data, headers=headers))
        except FatalHttp as e:
            if e.status not in _CONFLICT_STATUSES:
                raise
            logger.debug(f"{key} exists, overwriting")
            self.transport.send(RequestSpec("PUT", url, data=data, headers=headers))

    def download(self, key: str) -> Optional[bytes]:
        """Fetch an object's bytes, or None when the key does not exist."""
        try:
            response = self.transport.send(RequestSpec(
                "GET",
                self._url(f"/object/{self.bucket}/{key}"),
                headers=self._headers(),
            ))
        except FatalHttp as e:
            if e.status not in _MISSING_STATUSES:
                raise
            logger.debug(f"{key} not found")
            return None
        return response.content

    def _list_page(self, prefix: str, offset: int) -> List[Dict[str, Any]]:
        response = self.transport.send(RequestSpec(
            "POST",
            self._url(f"/object/list/{self.bucket}"),
            json={
                "prefix": prefix,
                "limit": LIST_PAGE_SIZE,
                "offset": offset,
                "sortBy": {"column": "created_at", "order": "asc"},
            },
            headers=self._headers(),
        ))
        entries = response.json()
        return entries if isinstance(entries, list) else []

    def list_objects(self, prefix: str = "") -> List[StorageObject]:
        """List every object under ``prefix``, descending into folders."""
        objects: List[StorageObject] = []
        offset = 0
        while True:
            page = self._list_page(prefix, offset)
            for entry in page:
                name = entry.get("name")
                if not name or name.endswith("/"):
                    continue
                key = f"{prefix}{name}"
                if _is_folder(entry):
                    objects.extend(self.list_objects(f"{key}/"))
                    continue
                metadata = entry.get("metadata") or {}
                objects.append(StorageObject(
                    key=key,
                    size_bytes=int(metadata.get("size") or 0),
                    created_at=parse_timestamp(entry.get("created_at"))
                ))
            if len(page) < LIST_PAGE_SIZE:
                return objects
            offset += LIST_PAGE_SIZE

    def delete_objects(self, keys: Sequence[str]) -> None:
        if not keys:
            return
        self.transport.send(RequestSpec(
            "DELETE",
            self._url(f"/object/{self.bucket}"),
            json={"prefixes": list(keys)},
            headers=self._headers(),
        ))
