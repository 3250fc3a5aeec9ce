"""Object store access: native Cloud Storage API first, Firebase REST gateway second."""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import aiohttp
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from geophoto.error_handling import (
    ListingExhausted,
    ResolutionExhausted,
    RetryPolicy,
    TaintedContentError,
    retry_transient,
)
from geophoto.models import FetchedImage, FolderListing, ImageReference, ReferenceKind
from geophoto.references import (
    bucket_host_variants,
    candidate_references,
    mime_from_path,
    normalize_bucket_host,
)


logger = logging.getLogger(__name__)


STORAGE_READ_SCOPE = "https://www.googleapis.com/auth/devstorage.read_only"
GCS_API_ROOT = "https://storage.googleapis.com/storage/v1"
FIREBASE_REST_ROOT = "https://firebasestorage.googleapis.com/v0"


def _quote_object(path: str) -> str:
    return quote(path, safe="")


def _folder_prefix(path: str) -> str:
    cleaned = (path or "").strip("/")
    return f"{cleaned}/" if cleaned else ""


def _first_token(value: Any) -> Optional[str]:
    if not value:
        return None
    token = str(value).split(",")[0].strip()
    return token or None


def tokenized_download_url(bucket_host: str, path: str, token: Optional[str] = None) -> str:
    """Build the public Firebase download URL for an object."""
    url = f"{FIREBASE_REST_ROOT}/b/{bucket_host}/o/{_quote_object(path)}?alt=media"
    if token:
        url += f"&token={token}"
    return url


async def _get(url: str, *, timeout: float, headers: Optional[Dict[str, str]] = None,
               params: Optional[Dict[str, str]] = None) -> Tuple[bytes, str]:
    """GET a URL and return its body and content type. Non-2xx raises."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url, headers=headers, params=params) as response:
            response.raise_for_status()
            data = await response.read()
            return data, response.headers.get("Content-Type", "")


async def _get_json(url: str, *, timeout: float, headers: Optional[Dict[str, str]] = None,
                    params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    data, _ = await _get(url, timeout=timeout, headers=headers, params=params)
    return json.loads(data.decode("utf-8") or "{}")


async def fetch_url(url: str, timeout: float) -> Tuple[bytes, str]:
    """Plain unauthenticated HTTP GET."""
    return await _get(url, timeout=timeout)


class GoogleStorageClient:
    """Authenticated client for the Cloud Storage JSON API.

    Credentials come from a service account (a key file path or the key JSON
    itself) and otherwise from Application Default Credentials.
    """

    provider_name = "native"

    def __init__(self, credentials_source: Optional[str] = None, credentials: Any = None):
        self._credentials_source = credentials_source
        self._credentials = credentials
        self._lock = asyncio.Lock()

    def _load_credentials(self):
        if self._credentials is not None:
            return self._credentials

        if self._credentials_source:
            if os.path.isfile(self._credentials_source):
                with open(self._credentials_source, 'r') as f:
                    credentials_info = json.load(f)
            else:
                credentials_info = json.loads(self._credentials_source)
            self._credentials = service_account.Credentials.from_service_account_info(
                credentials_info,
                scopes=[STORAGE_READ_SCOPE],
            )
            logger.info("Loaded service account credentials for the object store")
        else:
            from google.auth import default

            self._credentials, _ = default(scopes=[STORAGE_READ_SCOPE])
            logger.info("Using application default credentials for the object store")
        return self._credentials

    async def _auth_headers(self) -> Dict[str, str]:
        async with self._lock:
            credentials = self._load_credentials()
            if not credentials.valid:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, credentials.refresh, Request())
        return {"Authorization": f"Bearer {credentials.token}"}

    async def fetch(self, bucket_host: str, path: str, timeout: float) -> Tuple[bytes, str]:
        url = f"{GCS_API_ROOT}/b/{bucket_host}/o/{_quote_object(path)}"
        return await _get(url, timeout=timeout, headers=await self._auth_headers(), params={"alt": "media"})

    async def list(self, bucket_host: str, path: str, timeout: float) -> FolderListing:
        url = f"{GCS_API_ROOT}/b/{bucket_host}/o"
        params = {"prefix": _folder_prefix(path), "delimiter": "/"}
        listing = FolderListing()
        while True:
            payload = await _get_json(url, timeout=timeout, headers=await self._auth_headers(), params=params)
            listing.extend(FolderListing.from_payload(payload))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return listing
            params = {**params, "pageToken": page_token}

    async def download_token(self, bucket_host: str, path: str, timeout: float) -> Optional[str]:
        url = f"{GCS_API_ROOT}/b/{bucket_host}/o/{_quote_object(path)}"
        payload = await _get_json(url, timeout=timeout, headers=await self._auth_headers())
        return _first_token((payload.get("metadata") or {}).get("firebaseStorageDownloadTokens"))


class FirebaseRestClient:
    """Unauthenticated client for the Firebase Storage REST gateway."""

    provider_name = "rest"

    async def fetch(self, bucket_host: str, path: str, timeout: float) -> Tuple[bytes, str]:
        url = f"{FIREBASE_REST_ROOT}/b/{bucket_host}/o/{_quote_object(path)}"
        return await _get(url, timeout=timeout, params={"alt": "media"})

    async def list(self, bucket_host: str, path: str, timeout: float) -> FolderListing:
        url = f"{FIREBASE_REST_ROOT}/b/{bucket_host}/o"
        params = {"prefix": _folder_prefix(path), "delimiter": "/"}
        listing = FolderListing()
        while True:
            payload = await _get_json(url, timeout=timeout, params=params)
            listing.extend(FolderListing.from_payload(payload))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return listing
            params = {**params, "pageToken": page_token}

    async def download_token(self, bucket_host: str, path: str, timeout: float) -> Optional[str]:
        url = f"{FIREBASE_REST_ROOT}/b/{bucket_host}/o/{_quote_object(path)}"
        payload = await _get_json(url, timeout=timeout)
        return _first_token(payload.get("downloadTokens"))


def _describe(error: BaseException) -> str:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return f"HTTP {status}"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__


class ObjectStoreResolver:
    """Turns image references into bytes, folder listings and download URLs.

    Every store read goes to the native client first. When that fails for any
    reason the same read is retried over the REST gateway against each host
    variant of the bucket. Bytes obtained through that path are flagged
    ``via_fallback``.
    """

    def __init__(
        self,
        native: Any = None,
        http: Any = None,
        *,
        default_bucket_host: Optional[str] = None,
        fetch_timeout: float = 30.0,
        listing_timeout: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        url_fetcher: Any = None,
    ):
        self.native = native
        self.http = http if http is not None else FirebaseRestClient()
        self.default_bucket_host = normalize_bucket_host(default_bucket_host) if default_bucket_host else None
        self.fetch_timeout = fetch_timeout
        self.listing_timeout = listing_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._fetch_url = url_fetcher or fetch_url

    async def _read(self, func, *args):
        return await retry_transient(func, *args, policy=self.retry_policy)

    def _strategies(self, bucket_host: str) -> List[Tuple[Any, str, bool]]:
        """(client, host, via_fallback) in the order they should be tried."""
        strategies = []
        if self.native is not None:
            strategies.append((self.native, normalize_bucket_host(bucket_host), False))
        for host in bucket_host_variants(bucket_host):
            strategies.append((self.http, host, True))
        return strategies

    async def fetch_bytes(self, reference: ImageReference, timeout: Optional[float] = None) -> FetchedImage:
        """Fetch the bytes behind one reference."""
        timeout = timeout or self.fetch_timeout

        if reference.kind is ReferenceKind.INLINE:
            return FetchedImage(reference.data, reference.mime_type, reference, source="inline")

        if reference.kind is ReferenceKind.ABSOLUTE_URL:
            try:
                data, content_type = await self._read(self._fetch_url, reference.url, timeout)
            except Exception as e:
                raise ResolutionExhausted(
                    f"Could not fetch {reference.url}",
                    attempts=[f"http {reference.url}: {_describe(e)}"],
                ) from e
            return FetchedImage(
                data,
                content_type or mime_from_path(reference.url),
                reference,
                source="http",
            )

        attempts: List[str] = []
        last_error: Optional[BaseException] = None
        for client, host, via_fallback in self._strategies(reference.bucket_host):
            try:
                data, content_type = await self._read(client.fetch, host, reference.path, timeout)
            except Exception as e:
                last_error = e
                attempts.append(f"{client.provider_name} gs://{host}/{reference.path}: {_describe(e)}")
                logger.debug(f"Fetch via {client.provider_name} failed for {host}/{reference.path}: {e}")
                continue
            if via_fallback:
                logger.info(f"Fetched {reference.path} through the REST fallback on {host}")
            return FetchedImage(
                data,
                content_type or mime_from_path(reference.path),
                reference,
                via_fallback=via_fallback,
                source=client.provider_name,
            )

        raise ResolutionExhausted(
            f"Could not fetch {reference.to_locator()} by any strategy",
            attempts=attempts,
        ) from last_error

    async def fetch_first(self, candidates: Sequence[ImageReference], timeout: Optional[float] = None) -> FetchedImage:
        """Return the first candidate that fetches successfully."""
        attempts: List[str] = []
        last_error: Optional[BaseException] = None
        for candidate in candidates:
            try:
                return await self.fetch_bytes(candidate, timeout)
            except ResolutionExhausted as e:
                last_error = e
                attempts.extend(e.attempts)

        raise ResolutionExhausted(
            f"None of {len(candidates)} candidate reference(s) could be fetched",
            attempts=attempts,
            diagnostics={'candidates': [str(c) for c in candidates]},
        ) from last_error

    async def resolve(self, raw: Any, timeout: Optional[float] = None) -> FetchedImage:
        """Normalize a loose reference and fetch its first reachable candidate."""
        return await self.fetch_first(candidate_references(raw, self.default_bucket_host), timeout)

    async def list_folder(self, path: str, bucket_host: Optional[str] = None) -> FolderListing:
        """List the immediate subfolders and files of a store folder."""
        bucket_host = bucket_host or self.default_bucket_host
        if not bucket_host:
            raise ListingExhausted(f"No bucket configured to list {path!r}")

        attempts: List[str] = []
        last_error: Optional[BaseException] = None
        for client, host, _ in self._strategies(bucket_host):
            try:
                return await self._read(client.list, host, path, self.listing_timeout)
            except Exception as e:
                last_error = e
                attempts.append(f"{client.provider_name} list gs://{host}/{_folder_prefix(path)}: {_describe(e)}")

        raise ListingExhausted(f"Could not list {path!r} by any strategy", attempts=attempts) from last_error

    async def download_url(self, reference: Any) -> str:
        """Resolve a URL from which the referenced object can be fetched."""
        if not isinstance(reference, ImageReference):
            reference = candidate_references(reference, self.default_bucket_host)[0]
        if reference.kind is not ReferenceKind.STORE_PATH:
            return reference.to_locator()

        attempts: List[str] = []
        last_error: Optional[BaseException] = None
        for client, host, via_fallback in self._strategies(reference.bucket_host):
            try:
                token = await self._read(client.download_token, host, reference.path, self.fetch_timeout)
            except Exception as e:
                last_error = e
                attempts.append(f"{client.provider_name} metadata gs://{host}/{reference.path}: {_describe(e)}")
                continue
            if token or via_fallback:
                # The gateway only returns metadata for readable objects, so the
                # untokenized URL is fetchable too.
                return tokenized_download_url(host, reference.path, token)
            attempts.append(f"{client.provider_name} metadata gs://{host}/{reference.path}: no download token")

        raise ResolutionExhausted(
            f"Could not resolve a download URL for {reference.to_locator()}",
            attempts=attempts,
        ) from last_error


def require_exportable(fetched: FetchedImage) -> FetchedImage:
    """Refuse to re-export bytes that came through the store's REST fallback."""
    if not fetched.export_allowed:
        raise TaintedContentError(
            f"Image {fetched.reference} was fetched via the HTTP fallback and cannot be exported",
            diagnostics={'source': fetched.source},
        )
    return fetched


def build_resolver(context, native: Any = None) -> ObjectStoreResolver:
    """Create a resolver configured from a :class:`PipelineContext`."""
    if native is None and (context.google_credentials or context.storage_bucket):
        native = GoogleStorageClient(context.google_credentials)
    return ObjectStoreResolver(
        native=native,
        default_bucket_host=context.storage_bucket,
        fetch_timeout=context.fetch_timeout,
        listing_timeout=context.listing_timeout,
    )
