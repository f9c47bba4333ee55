import asyncio
from typing import Any, List, Optional

import aiohttp
from loguru import logger
from meili_task_poller.errors import EngineUnavailableError, ProtocolError
from meili_task_poller.models import OperationResult, PollConfig
from meili_task_poller.poller import OperationPoller


class MeiliClient:
    """Thin async client for the Meilisearch management API.

    Every write endpoint of the engine is asynchronous: it enqueues a task
    and answers with its ``taskUid``. ``get_task`` is the status fetch that
    ``OperationPoller`` drives to completion.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "MeiliClient":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("MeiliClient must be used as an async context manager")
        return self._session

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method, url, json=json, headers=self._headers()
            ) as response:
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {method} {url}: {e.message}")
            raise
        except aiohttp.ClientError as e:
            self.logger.error(f"Request to {method} {url} failed: {e}")
            raise

    @staticmethod
    def _task_uid(data: Any, action: str) -> int:
        if not isinstance(data, dict) or data.get("taskUid") is None:
            raise ProtocolError(f"No taskUid in response to {action}: {data!r}")
        return data["taskUid"]

    async def health(self) -> dict:
        return await self._request("GET", "/health")

    async def wait_until_healthy(self, max_attempts: int = 30, delay: float = 2.0) -> None:
        """Poll /health until the engine reports itself available"""
        for attempt in range(1, max_attempts + 1):
            try:
                data = await self.health()
                if data.get("status") == "available":
                    self.logger.info("Meilisearch is healthy")
                    return
            except aiohttp.ClientError as e:
                self.logger.debug(f"Health check failed: {e}")

            self.logger.warning(f"Engine not ready, attempt {attempt}/{max_attempts}")
            if attempt < max_attempts:
                await asyncio.sleep(delay)

        raise EngineUnavailableError(
            f"Meilisearch at {self.base_url} not available after {max_attempts} attempts",
            polls=max_attempts,
        )

    async def get_task(self, task_uid: Any) -> dict:
        return await self._request("GET", f"/tasks/{task_uid}")

    async def create_dump(self) -> int:
        data = await self._request("POST", "/dumps")
        task_uid = self._task_uid(data, "dump creation")
        self.logger.info(f"Dump task created with uid {task_uid}")
        return task_uid

    async def create_index(self, uid: str, primary_key: str = "id") -> int:
        data = await self._request(
            "POST", "/indexes", json={"uid": uid, "primaryKey": primary_key}
        )
        return self._task_uid(data, f"creating index {uid!r}")

    async def update_settings(self, index: str, settings: dict) -> int:
        data = await self._request("PATCH", f"/indexes/{index}/settings", json=settings)
        return self._task_uid(data, f"updating settings of {index!r}")

    async def create_key(
        self,
        description: str,
        actions: List[str],
        indexes: List[str],
        expires_at: Optional[str] = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/keys",
            json={
                "description": description,
                "actions": actions,
                "indexes": indexes,
                "expiresAt": expires_at,
            },
        )
        if not isinstance(data, dict) or not data.get("key"):
            raise ProtocolError(f"No key in response to key creation: {data!r}")
        return data["key"]

    async def wait_for_task(
        self,
        task_uid: Any,
        config: Optional[PollConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OperationResult:
        poller = OperationPoller(config)
        return await poller.poll(task_uid, self.get_task, cancel_event=cancel_event)
