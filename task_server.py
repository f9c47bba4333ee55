import itertools
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from aiohttp import web
from loguru import logger

DEFAULT_STATUSES = ["enqueued", "processing", "succeeded"]
DEFAULT_ERROR = {
    "message": "Internal error while creating the task",
    "code": "internal",
    "type": "internal",
    "link": "https://docs.meilisearch.com/errors#internal",
}


class TaskServer:
    """Fake Meilisearch management API for local runs and tests.

    Every task steps through ``statuses`` one entry per status poll and
    stays on the last entry once reached.
    """

    def __init__(
        self,
        statuses: Optional[List[str]] = None,
        error: Optional[dict] = None,
        unhealthy_checks: int = 0,
        dumps_dir: Optional[Path] = None,
        master_key: Optional[str] = None,
    ):
        self.statuses = list(statuses or DEFAULT_STATUSES)
        self.error = error or DEFAULT_ERROR
        self.unhealthy_checks = unhealthy_checks
        self.dumps_dir = Path(dumps_dir) if dumps_dir else None
        self.master_key = master_key
        self.health_checks = 0
        self.tasks = {}
        self.indexes = {}
        self.settings = {}
        self.keys = []
        self._uids = itertools.count()
        self.runner = None
        self.app = web.Application(middlewares=[self.auth_middleware])
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_post("/dumps", self.handle_create_dump)
        self.app.router.add_post("/indexes", self.handle_create_index)
        self.app.router.add_patch("/indexes/{uid}/settings", self.handle_update_settings)
        self.app.router.add_post("/keys", self.handle_create_key)
        self.app.router.add_get("/tasks/{uid}", self.handle_task)
        self.logger = logger

    @web.middleware
    async def auth_middleware(self, request, handler):
        if self.master_key and request.path != "/health":
            if request.headers.get("Authorization") != f"Bearer {self.master_key}":
                return web.json_response(
                    {"message": "The provided API key is invalid.", "code": "invalid_api_key"},
                    status=403,
                )
        return await handler(request)

    def _enqueue(
        self,
        task_type: str,
        index_uid: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        error: Optional[dict] = None,
    ) -> web.Response:
        uid = next(self._uids)
        self.tasks[uid] = {
            "type": task_type,
            "indexUid": index_uid,
            "statuses": statuses or self.statuses,
            "error": error or self.error,
            "polls": 0,
            "done": False,
        }
        self.logger.info(f"Enqueued {task_type} task {uid}")
        return web.json_response(
            {
                "taskUid": uid,
                "indexUid": index_uid,
                "status": "enqueued",
                "type": task_type,
                "enqueuedAt": datetime.now(timezone.utc).isoformat(),
            },
            status=202,
        )

    async def handle_health(self, request):
        self.health_checks += 1
        if self.health_checks <= self.unhealthy_checks:
            self.logger.info("Returning unavailable health status")
            return web.json_response({"status": "unavailable"}, status=503)
        return web.json_response({"status": "available"})

    async def handle_create_dump(self, request):
        return self._enqueue("dumpCreation")

    async def handle_create_index(self, request):
        body = await request.json()
        index_uid = body["uid"]
        if index_uid in self.indexes:
            return self._enqueue(
                "indexCreation",
                index_uid,
                statuses=["enqueued", "failed"],
                error={
                    "message": f"Index `{index_uid}` already exists.",
                    "code": "index_already_exists",
                    "type": "invalid_request",
                    "link": "https://docs.meilisearch.com/errors#index_already_exists",
                },
            )
        self.indexes[index_uid] = {"primaryKey": body.get("primaryKey")}
        return self._enqueue("indexCreation", index_uid)

    async def handle_update_settings(self, request):
        index_uid = request.match_info["uid"]
        self.settings[index_uid] = await request.json()
        return self._enqueue("settingsUpdate", index_uid)

    async def handle_create_key(self, request):
        body = await request.json()
        key = {**body, "key": uuid.uuid4().hex, "uid": str(uuid.uuid4())}
        self.keys.append(key)
        return web.json_response(key, status=201)

    async def handle_task(self, request):
        uid = int(request.match_info["uid"])
        task = self.tasks.get(uid)
        if task is None:
            return web.json_response(
                {"message": f"Task `{uid}` not found.", "code": "task_not_found"},
                status=404,
            )

        statuses = task["statuses"]
        status = statuses[min(task["polls"], len(statuses) - 1)]
        task["polls"] += 1
        self.logger.info(f"Returning {status} status for task {uid}")

        body = {
            "uid": uid,
            "indexUid": task["indexUid"],
            "status": status,
            "type": task["type"],
        }
        if status == "failed":
            body["error"] = task["error"]
        if status == "succeeded" and not task["done"]:
            task["done"] = True
            self._complete(task)
        return web.json_response(body)

    def _complete(self, task: dict) -> None:
        if task["type"] == "dumpCreation" and self.dumps_dir is not None:
            self.dumps_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d-%H%M%S%f")
            (self.dumps_dir / f"{stamp}.dump").write_bytes(b"meilisearch dump")

    async def start(self, port: int = 7700):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
