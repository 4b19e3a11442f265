"""
Content-addressed storage for vaulted documents (Supabase Storage).

Every signed document lives at exactly one deterministic path derived from
(provider, external_document_id), so repeated ingestion attempts overwrite
the same object instead of scattering copies across ad hoc locations.

The SHA-256 returned by put() is computed over the very bytes object that is
uploaded; nothing transforms the content in between.
"""

import hashlib
import logging
import re
from typing import Optional
from urllib.parse import urlparse, urlunparse

from supabase import Client

from signvault.errors import StorageError

logger = logging.getLogger(__name__)

# Object names keep only these characters verbatim; "_" starts an escape
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9.\-]")


def _escape_char(match: re.Match) -> str:
    return "".join(f"_{byte:02X}" for byte in match.group(0).encode("utf-8"))


def storage_path_for(provider: str, external_document_id: str) -> str:
    """
    Object path for a provider document: {provider}/{escaped_id}.pdf

    Pure and injective. Characters outside [A-Za-z0-9.-] (the underscore
    included) become "_XX" per UTF-8 byte, so provider ids cannot escape
    the provider prefix or produce nested folders, and two different ids
    never share an object.
    """
    escaped = _UNSAFE_ID_CHARS.sub(_escape_char, external_document_id)
    return f"{provider}/{escaped}.pdf"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _rewrite_signed_url_host(signed_url: str, public_url: Optional[str]) -> str:
    """
    Replace the host in a signed URL with the browser-accessible Supabase URL.

    When the backend reaches Supabase through an internal hostname (e.g.
    ``http://host.docker.internal:54321``) that host is embedded in every
    signed URL. If a public URL is configured its scheme and netloc are
    swapped in; path, query and fragment are kept.
    """
    if not public_url:
        return signed_url

    parsed_signed = urlparse(signed_url)
    parsed_public = urlparse(public_url)

    return urlunparse((
        parsed_public.scheme,
        parsed_public.netloc,
        parsed_signed.path,
        parsed_signed.params,
        parsed_signed.query,
        parsed_signed.fragment,
    ))


class ContentAddressStore:
    """Upload, fetch and remove vaulted PDFs in a single Supabase bucket."""

    def __init__(self, client: Client, bucket: str, public_url: Optional[str] = None):
        self._client = client
        self.bucket = bucket
        self._public_url = public_url

    def put(self, path: str, data: bytes) -> str:
        """
        Upload ``data`` to ``path`` (overwrite if it exists) and return its
        SHA-256 hex digest.

        Raises:
            StorageError: if the upload fails.
        """
        content_hash = sha256_hex(data)
        try:
            self._client.storage.from_(self.bucket).upload(
                path,
                data,
                {
                    "content-type": "application/pdf",
                    "upsert": "true",  # deterministic paths: re-ingestion overwrites
                },
            )
        except Exception as e:
            raise StorageError(f"Failed to upload {path}: {e}")

        logger.info(f"Stored {len(data)} bytes at {self.bucket}/{path} sha256={content_hash}")
        return content_hash

    def get(self, path: str) -> bytes:
        """Download the exact stored bytes for ``path``."""
        try:
            return self._client.storage.from_(self.bucket).download(path)
        except Exception as e:
            raise StorageError(f"Failed to download {path}: {e}")

    def delete(self, path: str) -> bool:
        """
        Remove an object. Returns True if something was deleted, False if the
        object did not exist.
        """
        try:
            result = self._client.storage.from_(self.bucket).remove([path])
        except Exception as e:
            raise StorageError(f"Failed to delete {path}: {e}")
        return bool(result)

    def signed_url(self, path: str, expiry_seconds: int = 3600) -> str:
        """Short-lived download URL for the authoritative copy."""
        try:
            result = self._client.storage.from_(self.bucket).create_signed_url(
                path,
                expiry_seconds,
            )
        except Exception as e:
            raise StorageError(f"Failed to generate signed URL: {e}")

        url = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not url:
            raise StorageError("No signed URL returned from storage")
        return _rewrite_signed_url_host(url, self._public_url)

    def ping(self) -> None:
        """Verify the bucket exists; raises StorageError otherwise."""
        try:
            buckets = self._client.storage.list_buckets()
        except Exception as e:
            raise StorageError(f"Storage unreachable: {e}")
        if self.bucket not in [b.name for b in buckets]:
            raise StorageError(f"Storage bucket '{self.bucket}' not found")
