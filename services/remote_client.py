# chronify/services/remote_client.py
#
# HTTP client for the remote system of record.
#
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

from core.errors import NetworkError, RemoteError
from core.logs import ensure_logger
from core.settings import SYNC
from models.folder import Folder
from models.task import Task
from services.wire import (
    folder_from_wire,
    folder_patch_to_wire,
    folder_to_wire,
    task_from_wire,
    task_patch_to_wire,
    task_to_wire,
    unwrap_folders,
)


USER_HEADER = "X-Client-Uid"


class RemoteClient:
    """Async client of the tasks/folders REST API, scoped to one user.

    Any transport problem or timeout raises ``NetworkError``; any non-2xx
    answer raises ``RemoteError``. Write calls return the canonical record the
    server persisted.
    """

    def __init__(
        self,
        user_id: str,
        base_url: str = SYNC.api_base_url,
        *,
        token: Optional[str] = None,
        timeout: float = SYNC.request_timeout_sec,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_id = user_id
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = ensure_logger("remote")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json", USER_HEADER: self.user_id}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, endpoint, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = e.response.reason_phrase or str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict) and response_data.get("message"):
                    detail = str(response_data["message"])
            except ValueError:
                pass
            raise RemoteError(e.response.status_code, detail, response_data=response_data) from e
        except httpx.RequestError as e:  # ConnectError, TimeoutException, ...
            raise NetworkError(f"{method} {endpoint} failed: {e!r}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise RemoteError(response.status_code, "Failed to decode JSON response", {"raw_text": response.text}) from e

    # ------------------------------------------------------------------
    # snapshot
    async def fetch_tasks(self) -> List[Task]:
        payload = await self._request("GET", "/api/tasks")
        if isinstance(payload, dict):
            payload = payload.get("tasks") or []
        if not isinstance(payload, list):
            raise RemoteError(200, "unexpected tasks payload", {"raw": payload})
        return [task_from_wire(entry, self.user_id) for entry in payload if isinstance(entry, dict)]

    async def fetch_folders(self) -> List[Folder]:
        payload = await self._request("GET", "/api/folders")
        return [folder_from_wire(entry, self.user_id) for entry in unwrap_folders(payload)]

    async def fetch_snapshot(self) -> Tuple[List[Task], List[Folder]]:
        tasks, folders = await asyncio.gather(self.fetch_tasks(), self.fetch_folders())
        return tasks, folders

    # ------------------------------------------------------------------
    # tasks
    async def create_task(self, task: Task) -> Task:
        payload = await self._request("POST", "/api/tasks", task_to_wire(task))
        return self._record(payload, task_from_wire)

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        payload = await self._request("PUT", f"/api/tasks/{task_id}", task_patch_to_wire(changes))
        return self._record(payload, task_from_wire, required=False)

    async def delete_task(self, task_id: str) -> None:
        await self._request("DELETE", f"/api/tasks/{task_id}")

    # ------------------------------------------------------------------
    # folders
    async def create_folder(self, folder: Folder) -> Folder:
        payload = await self._request("POST", "/api/folders", folder_to_wire(folder))
        return self._record(payload, folder_from_wire)

    async def update_folder(self, folder_id: str, changes: Dict[str, Any]) -> Optional[Folder]:
        payload = await self._request("PUT", f"/api/folders/{folder_id}", folder_patch_to_wire(changes))
        return self._record(payload, folder_from_wire, required=False)

    async def delete_folder(self, folder_id: str, *, with_tasks: bool) -> None:
        variant = "folder-with-tasks" if with_tasks else "only-folder"
        await self._request("DELETE", f"/api/folders/{variant}/{folder_id}")

    def _record(self, payload: Any, parse, *, required: bool = True):
        if isinstance(payload, dict) and (payload.get("_id") or payload.get("id")):
            return parse(payload, self.user_id)
        if required:
            raise RemoteError(200, "write response without a canonical record", {"raw": payload})
        return None


__all__ = ["RemoteClient", "USER_HEADER"]
