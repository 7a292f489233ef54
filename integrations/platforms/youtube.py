"""YouTube Live Streaming API integration.

Creates scheduled broadcasts, binds them to one reusable ingest stream,
drives lifecycle transitions and lists upcoming/active broadcasts via the
Data API v3.  OAuth consent is handled elsewhere; this client only loads
the stored user token and refreshes it when it expires.
"""
import asyncio
import json
import logging
import mimetypes
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from core.errors import PlatformError
from core.models import BroadcastInfo, parse_iso, to_iso
from integrations.platforms.base.broadcast_platform import BroadcastPlatform

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/youtube/v3"
UPLOAD_BASE = "https://www.googleapis.com/upload/youtube/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

REUSABLE_STREAM_TITLE = "OpenStreamScheduler ingest"
# Everything short of live; broadcasts mid go-live are still "scheduled".
_UPCOMING_STATUSES = ("created", "ready", "testStarting", "testing", "liveStarting")
_LATENCY_PREFERENCES = {"normal": "normal", "low": "low", "ultralow": "ultraLow", "ultraLow": "ultraLow"}


class YouTubeTokenManager:
    """Loads the stored OAuth token file and refreshes the access token."""

    def __init__(self, token_path: str, client_secrets_path: str):
        self.token_path = token_path
        self.client_secrets_path = client_secrets_path
        self._token: Optional[Dict[str, Any]] = None

    def _load_client(self) -> Dict[str, str]:
        with open(self.client_secrets_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        section = data.get("installed") or data.get("web") or {}
        return {"client_id": section.get("client_id", ""), "client_secret": section.get("client_secret", "")}

    def _load_token(self) -> Dict[str, Any]:
        if self._token is None:
            if not os.path.exists(self.token_path):
                raise PlatformError("YouTube is not authorized (token file missing)", status_code=401, reason="unauthorized")
            with open(self.token_path, 'r', encoding='utf-8') as f:
                self._token = json.load(f)
        return self._token

    def _save_token(self, token: Dict[str, Any]) -> None:
        self._token = token
        with open(self.token_path, 'w', encoding='utf-8') as f:
            json.dump(token, f, indent=2)

    def _expired(self, token: Dict[str, Any]) -> bool:
        # expiry_date is milliseconds since epoch (googleapis token format)
        expiry_ms = token.get("expiry_date")
        if not expiry_ms:
            return False
        return time.time() * 1000 >= float(expiry_ms) - 60_000

    def access_token(self) -> str:
        token = self._load_token()
        if self._expired(token):
            self.refresh()
            token = self._load_token()
        return token["access_token"]

    def refresh(self) -> None:
        token = self._load_token()
        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise PlatformError("No refresh token available, re-authorization required", status_code=401,
                                reason="invalid_grant")
        client = self._load_client()
        try:
            response = requests.post(GOOGLE_TOKEN_URL, data={
                "client_id": client["client_id"],
                "client_secret": client["client_secret"],
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }, timeout=10)
        except requests.RequestException as e:
            raise PlatformError(f"Token refresh failed: {e}", transient=True) from e

        if response.status_code in (400, 401):
            logger.error("[YouTube] Refresh token rejected (invalid_grant). Deleting stored token; re-auth required.")
            self.clear()
            raise PlatformError("Refresh token rejected", status_code=response.status_code, reason="invalid_grant")
        response.raise_for_status()

        data = response.json()
        token = dict(token)
        token["access_token"] = data["access_token"]
        token["expiry_date"] = int((time.time() + data.get("expires_in", 3600)) * 1000)
        if data.get("refresh_token"):
            token["refresh_token"] = data["refresh_token"]
        self._save_token(token)
        logger.info("[YouTube] Access token refreshed")

    def clear(self) -> None:
        self._token = None
        try:
            if os.path.exists(self.token_path):
                os.remove(self.token_path)
        except OSError as e:
            logger.warning(f"[YouTube] Failed to delete token file: {e}")


class YouTubeBroadcastClient(BroadcastPlatform):
    """YouTube platform integration (blocking HTTP runs in worker threads)."""

    def __init__(self, token_manager: YouTubeTokenManager, timeout: float = 15.0):
        super().__init__("YouTube")
        self.token_manager = token_manager
        self.timeout = timeout
        self.session = requests.Session()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _error_from_response(response: requests.Response) -> PlatformError:
        reason = None
        message = response.text[:300]
        try:
            err = response.json().get("error", {})
            if isinstance(err, dict):
                message = err.get("message") or message
                errors = err.get("errors") or []
                if errors:
                    reason = errors[0].get("reason")
        except ValueError:
            pass
        return PlatformError(message, status_code=response.status_code, reason=reason)

    def _request(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        """Authorized request, refreshing the token once on 401."""
        kwargs.setdefault("timeout", self.timeout)
        for attempt in (1, 2):
            headers = dict(kwargs.pop("headers", {}) or {})
            headers["Authorization"] = f"Bearer {self.token_manager.access_token()}"
            try:
                response = self.session.request(method, url, headers=headers, **kwargs)
            except requests.RequestException as e:
                raise PlatformError(f"{method} {url} failed: {e}", transient=True) from e

            if response.status_code == 401 and attempt == 1:
                logger.info(f"[{self.platform_name}] Got 401, attempting token refresh...")
                self.token_manager.refresh()
                kwargs["headers"] = {k: v for k, v in headers.items() if k != "Authorization"}
                continue
            if response.status_code >= 400:
                raise self._error_from_response(response)
            if response.status_code == 204 or not response.content:
                return None
            return response.json()
        return None

    async def _call(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._request, method, url, **kwargs)

    @staticmethod
    def _to_info(item: Dict[str, Any]) -> BroadcastInfo:
        snippet = item.get("snippet") or {}
        status = item.get("status") or {}
        return BroadcastInfo(
            id=item["id"],
            title=snippet.get("title", ""),
            time=snippet.get("scheduledStartTime"),
            privacy=status.get("privacyStatus"),
            status=status.get("lifeCycleStatus"),
        )

    async def _list_broadcasts(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_token = None
        while True:
            query = dict(params, maxResults=50)
            if page_token:
                query["pageToken"] = page_token
            data = await self._call("GET", f"{API_BASE}/liveBroadcasts", params=query) or {}
            items.extend(data.get("items") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return items

    # ------------------------------------------------------------------
    # BroadcastPlatform
    # ------------------------------------------------------------------

    async def create_broadcast(self, title: str, start: datetime, description: str = "",
                               privacy: str = "public", latency: str = "normal") -> BroadcastInfo:
        body = {
            "snippet": {"title": title, "description": description, "scheduledStartTime": to_iso(start)},
            "status": {"privacyStatus": privacy, "selfDeclaredMadeForKids": False},
            "contentDetails": {
                "monitorStream": {"enableMonitorStream": False},
                "latencyPreference": _LATENCY_PREFERENCES.get(latency, "normal"),
            },
        }
        data = await self._call(
            "POST", f"{API_BASE}/liveBroadcasts",
            params={"part": "snippet,status,contentDetails"}, json=body,
        ) or {}
        info = self._to_info(data)
        self.log_success("Created broadcast", f"{info.id} '{info.title}' at {info.time}")
        return info

    async def _find_or_create_stream(self) -> Dict[str, Any]:
        data = await self._call(
            "GET", f"{API_BASE}/liveStreams",
            params={"part": "id,snippet,cdn,contentDetails", "mine": "true", "maxResults": 50},
        ) or {}
        for stream in data.get("items") or []:
            snippet = stream.get("snippet") or {}
            if snippet.get("title") == REUSABLE_STREAM_TITLE:
                return stream

        body = {
            "snippet": {"title": REUSABLE_STREAM_TITLE},
            "cdn": {"frameRate": "variable", "ingestionType": "rtmp", "resolution": "variable"},
            "contentDetails": {"isReusable": True},
        }
        stream = await self._call(
            "POST", f"{API_BASE}/liveStreams",
            params={"part": "snippet,cdn,contentDetails"}, json=body,
        ) or {}
        self.log_success("Created reusable ingest stream", stream.get("id", ""))
        return stream

    async def bind_to_ingest_endpoint(self, broadcast_id: str) -> Dict[str, Any]:
        stream = await self._find_or_create_stream()
        await self._call(
            "POST", f"{API_BASE}/liveBroadcasts/bind",
            params={"id": broadcast_id, "streamId": stream["id"], "part": "id,contentDetails"},
        )
        ingestion = (stream.get("cdn") or {}).get("ingestionInfo") or {}
        self.log_success("Bound broadcast", f"{broadcast_id} -> stream {stream['id']}")
        return {
            "streamId": stream["id"],
            "ingestAddress": ingestion.get("ingestionAddress"),
            "streamKey": ingestion.get("streamName"),
        }

    async def transition(self, broadcast_id: str, status: str) -> None:
        await self._call(
            "POST", f"{API_BASE}/liveBroadcasts/transition",
            params={"broadcastStatus": status, "id": broadcast_id, "part": "status"},
        )
        self.log_success("Transitioned broadcast", f"{broadcast_id} -> {status}")

    async def get_status(self, broadcast_id: str) -> str:
        data = await self._call(
            "GET", f"{API_BASE}/liveBroadcasts", params={"part": "status", "id": broadcast_id},
        ) or {}
        items = data.get("items") or []
        if not items:
            raise PlatformError(f"Broadcast {broadcast_id} not found", status_code=404,
                                reason="liveBroadcastNotFound")
        return (items[0].get("status") or {}).get("lifeCycleStatus", "")

    async def list_scheduled(self) -> List[BroadcastInfo]:
        items = await self._list_broadcasts(
            {"part": "id,snippet,status", "mine": "true", "broadcastType": "event"}
        )
        upcoming = [self._to_info(i) for i in items
                    if (i.get("status") or {}).get("lifeCycleStatus") in _UPCOMING_STATUSES]
        upcoming.sort(key=lambda b: (b.time is None, parse_iso(b.time) if b.time else None))
        return upcoming

    async def list_active(self) -> List[BroadcastInfo]:
        items = await self._list_broadcasts(
            {"part": "id,snippet,status", "broadcastStatus": "active", "broadcastType": "all"}
        )
        return [self._to_info(i) for i in items]

    async def delete_broadcast(self, broadcast_id: str) -> None:
        await self._call("DELETE", f"{API_BASE}/liveBroadcasts", params={"id": broadcast_id})
        self.log_success("Deleted broadcast", broadcast_id)

    async def set_thumbnail(self, broadcast_id: str, file_path: str) -> None:
        if not os.path.isfile(file_path):
            raise FileNotFoundError(f"Thumbnail not found: {file_path}")
        content_type = mimetypes.guess_type(file_path)[0] or "image/jpeg"

        def upload() -> None:
            with open(file_path, 'rb') as f:
                self._request(
                    "POST", f"{UPLOAD_BASE}/thumbnails/set",
                    params={"videoId": broadcast_id},
                    data=f.read(),
                    headers={"Content-Type": content_type},
                )

        await asyncio.to_thread(upload)
        self.log_success("Uploaded thumbnail", f"{broadcast_id} <- {os.path.basename(file_path)}")

    def close(self) -> None:
        self.session.close()
