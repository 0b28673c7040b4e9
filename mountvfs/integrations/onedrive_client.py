"""mountvfs/integrations/onedrive_client.py
OneDrive client wrapper for Microsoft Graph operations.

Responsibilities:
- Provide an auth interface used by the client (get_auth_headers)
- RefreshTokenAuth exchanges a delegated refresh token for access tokens
- OneDriveClient exposes item lookup, listing, streamed download, simple and
  resumable upload, folder creation, delete, move and server-side copy

Every Graph failure is translated into the mountvfs error taxonomy here, so
callers only ever see StorageError subclasses.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Protocol, Union
from urllib.parse import quote

import aiohttp
import structlog

from mountvfs.config import settings
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    BackendConnectionError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)

logger = structlog.get_logger()

# Graph upload session fragments must be multiples of 320 KiB
UPLOAD_FRAGMENT_SIZE = 32 * 320 * 1024
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024


class MicrosoftAuth(Protocol):
    """Auth interface providing headers for requests.

    Implementations may provide either a synchronous `get_auth_headers()` or
    an async `get_auth_headers()` coroutine. The client handles both.
    """

    def get_auth_headers(self) -> Union[Dict[str, str], Awaitable[Dict[str, str]]]:
        ...


class RefreshTokenAuth:
    """OAuth2 refresh-token (delegated) auth provider for Microsoft Graph.

    - Posts ``grant_type=refresh_token`` to the Microsoft identity platform
    - Caches the access token in memory and renews it 60 s before expiry
    - Keeps the rotated refresh token when the endpoint returns a new one
    """

    EXPIRY_MARGIN = 60

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        session: Optional[aiohttp.ClientSession] = None,
        token_url: Optional[str] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_url = token_url or settings.MS_TOKEN_URL
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()
        self._session = session

    async def _fetch_token(self) -> None:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        sess = self._session or aiohttp.ClientSession()
        created_local = self._session is None
        try:
            async with sess.request("POST", self.token_url, data=data) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    logger.error("onedrive_token_refresh_failed", status=resp.status)
                    raise BackendConnectionError(f"Token refresh failed: {resp.status} {text[:200]}")
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("onedrive_token_endpoint_unreachable", error=str(exc))
            raise BackendConnectionError(f"Token endpoint unreachable: {exc}") from exc
        finally:
            if created_local:
                await sess.close()

        access_token = payload.get("access_token")
        if not access_token:
            logger.error("onedrive_token_missing_access_token")
            raise BackendConnectionError("Token response missing access_token")
        self._token = access_token
        self.refresh_token = payload.get("refresh_token") or self.refresh_token
        self._expires_at = time.monotonic() + int(payload.get("expires_in", 0)) - self.EXPIRY_MARGIN
        logger.info("onedrive_token_refreshed")

    async def _ensure_token(self) -> None:
        async with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return
            await self._fetch_token()

    async def get_auth_headers(self) -> Dict[str, str]:
        await self._ensure_token()
        return {"Authorization": f"Bearer {self._token}"}


def _raise_for_status(status: int, text: str, path: str) -> None:
    if status < 400:
        return
    if status == 404:
        raise PathNotFoundError(f"Path not found: {path}")
    if status in (401, 403):
        raise PermissionDeniedError(f"Access denied: {path} (HTTP {status})")
    if status == 409:
        raise AlreadyExistsError(f"Path already exists: {path}")
    raise StorageError(f"Graph request failed for {path}: {status} {text[:200]}")


class OneDriveClient:
    """Thin client for OneDrive operations using Microsoft Graph.

    Paths are drive paths relative to ``root_path`` (``/`` is the root
    folder itself). The session is borrowed; the caller closes it.
    """

    def __init__(
        self,
        auth: MicrosoftAuth,
        session: aiohttp.ClientSession,
        root_path: str = "",
        base_url: Optional[str] = None,
    ):
        self.auth = auth
        self.session = session
        self.base_url = (base_url or settings.MS_GRAPH_BASE_URL).rstrip("/")
        self.root_path = "/" + root_path.strip("/") if root_path.strip("/") else ""

    def _full_path(self, path: str) -> str:
        return (self.root_path + "/" + path.strip("/")).rstrip("/") or "/"

    def _item_url(self, path: str, action: str = "") -> str:
        # Graph addresses items by path as /me/drive/root:/a/b.txt:/<action>
        full = self._full_path(path)
        if full == "/":
            base = f"{self.base_url}/me/drive/root"
            return f"{base}/{action}" if action else base
        base = f"{self.base_url}/me/drive/root:{quote(full)}"
        return f"{base}:/{action}" if action else base

    def parent_reference(self, parent: str) -> Dict[str, str]:
        full = self._full_path(parent)
        return {"path": "/drive/root" if full == "/" else f"/drive/root:{full}"}

    async def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = self.auth.get_auth_headers()
        if asyncio.iscoroutine(headers):
            headers = await headers
        return {**headers, "Accept": "application/json", **(extra or {})}

    async def _request(
        self,
        method: str,
        url: str,
        path: str,
        *,
        json: Any = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
        allow_redirects: bool = True,
    ) -> Dict[str, Any]:
        """Send one request and return its JSON body ({} when empty)."""
        if authenticated:
            headers = await self._headers(headers)
        try:
            async with self.session.request(
                method, url, json=json, data=data, headers=headers, allow_redirects=allow_redirects
            ) as resp:
                text = await resp.text()
                _raise_for_status(resp.status, text, path)
                if resp.status in (202, 303) and resp.headers.get("Location"):
                    return {"location": resp.headers["Location"]}
                if not text:
                    return {}
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("onedrive_request_failed", method=method, path=path, error=str(exc))
            raise BackendConnectionError(f"Graph request failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def get_item(self, path: str) -> Dict[str, Any]:
        return await self._request("GET", self._item_url(path), path)

    async def list_children(self, path: str) -> List[Dict[str, Any]]:
        """List children of a folder, following @odata.nextLink pages."""
        items: List[Dict[str, Any]] = []
        url: Optional[str] = self._item_url(path, "children")
        while url:
            page = await self._request("GET", url, path)
            items.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
        logger.debug("onedrive_list_children", path=path, count=len(items))
        return items

    async def iter_content(self, path: str, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        """Stream a file's content (Graph redirects to the download URL)."""
        chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
        headers = await self._headers()
        try:
            async with self.session.request("GET", self._item_url(path, "content"), headers=headers) as resp:
                if resp.status >= 400:
                    _raise_for_status(resp.status, await resp.text(), path)
                async for chunk in resp.content.iter_chunked(chunk_size):
                    yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BackendConnectionError(f"Download failed for {path}: {exc}") from exc

    async def upload_small(self, path: str, data: bytes) -> Dict[str, Any]:
        """Simple upload (PUT :/content), for payloads up to 4 MiB."""
        return await self._request(
            "PUT",
            self._item_url(path, "content"),
            path,
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )

    async def create_upload_session(self, path: str) -> str:
        body = {"item": {"@microsoft.graph.conflictBehavior": "replace"}}
        result = await self._request("POST", self._item_url(path, "createUploadSession"), path, json=body)
        upload_url = result.get("uploadUrl")
        if not upload_url:
            raise StorageError(f"Graph did not return an upload URL for {path}")
        return upload_url

    async def upload_fragment(
        self, upload_url: str, path: str, chunk: bytes, start: int, total: int
    ) -> Dict[str, Any]:
        """PUT one byte range to an upload session (the URL is pre-authorized)."""
        end = start + len(chunk) - 1
        return await self._request(
            "PUT",
            upload_url,
            path,
            data=chunk,
            headers={"Content-Length": str(len(chunk)), "Content-Range": f"bytes {start}-{end}/{total}"},
            authenticated=False,
        )

    async def create_folder(self, parent: str, name: str) -> Dict[str, Any]:
        body = {"name": name, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"}
        return await self._request("POST", self._item_url(parent, "children"), f"{parent}/{name}", json=body)

    async def delete(self, path: str) -> None:
        await self._request("DELETE", self._item_url(path), path)

    async def move(self, path: str, new_parent: str, new_name: str) -> Dict[str, Any]:
        body = {"parentReference": self.parent_reference(new_parent), "name": new_name}
        return await self._request("PATCH", self._item_url(path), path, json=body)

    async def copy(self, path: str, new_parent: str, new_name: str) -> Optional[str]:
        """Start a server-side copy; returns the async monitor URL."""
        body = {"parentReference": self.parent_reference(new_parent), "name": new_name}
        result = await self._request("POST", self._item_url(path, "copy"), path, json=body)
        return result.get("location")

    async def wait_for_copy(self, monitor_url: str, path: str, poll_interval: Optional[float] = None) -> None:
        """Poll the copy monitor until the job completes or fails."""
        interval = settings.ONEDRIVE_COPY_POLL_INTERVAL if poll_interval is None else poll_interval
        while True:
            status = await self._request(
                "GET", monitor_url, path, authenticated=False, allow_redirects=False
            )
            state = status.get("status")
            # the monitor answers 303 to the new item once the copy is done
            if state == "completed" or status.get("location"):
                return
            if state == "failed":
                error = status.get("error", {}).get("message", "unknown error")
                raise StorageError(f"OneDrive copy of {path} failed: {error}")
            logger.debug("onedrive_copy_pending", path=path, status=state,
                         progress=status.get("percentageComplete"))
            await asyncio.sleep(interval)
