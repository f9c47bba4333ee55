import asyncio
import gzip
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger
from meili_task_poller.errors import OperationFailedError
from meili_task_poller.meili_client import MeiliClient
from meili_task_poller.models import Outcome, PollConfig

BACKUP_PREFIX = "meili_dump_"


class DumpBackup:
    """Triggers an engine dump, waits for it and keeps a compressed copy.

    The engine writes dumps into its own ``dumps_dir``; the newest one is
    gzipped into ``backup_dir`` and backups older than ``retention_days``
    are pruned.
    """

    def __init__(
        self,
        client: MeiliClient,
        poll_config: Optional[PollConfig] = None,
        dumps_dir: Path = Path("./data/dumps"),
        backup_dir: Path = Path("./backups"),
        retention_days: int = 7,
    ):
        self.client = client
        self.poll_config = poll_config or PollConfig()
        self.dumps_dir = Path(dumps_dir)
        self.backup_dir = Path(backup_dir)
        self.retention_days = retention_days
        self.logger = logger

    def latest_dump(self) -> Path:
        dumps = sorted(
            self.dumps_dir.glob("*.dump"), key=lambda p: p.stat().st_mtime, reverse=True
        )
        if not dumps:
            raise FileNotFoundError(f"No dump file found in {self.dumps_dir}")
        return dumps[0]

    def archive(self, dump_file: Path) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        target = self.backup_dir / f"{BACKUP_PREFIX}{stamp}.dump.gz"
        with open(dump_file, "rb") as src, gzip.open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
        self.logger.info(f"Backup written to {target} ({target.stat().st_size} bytes)")
        return target

    def prune(self) -> int:
        """Delete backups older than the retention window; returns how many were removed

        Matches `find -mtime +N`: only files at least N+1 whole days old go.
        """
        cutoff = time.time() - (self.retention_days + 1) * 86400
        removed = 0
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*.dump.gz"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        if removed:
            self.logger.info(
                f"Removed {removed} backup(s) older than {self.retention_days} days"
            )
        return removed

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> Optional[Path]:
        self.logger.info("Starting Meilisearch backup")
        task_uid = await self.client.create_dump()
        result = await self.client.wait_for_task(
            task_uid, self.poll_config, cancel_event=cancel_event
        )

        if result.outcome == Outcome.cancelled:
            self.logger.warning(f"Backup cancelled while waiting for dump task {task_uid}")
            return None
        if not result.success:
            raise OperationFailedError(
                f"Dump creation failed: {result.error.message}", result=result
            )

        target = self.archive(self.latest_dump())
        self.prune()
        return target
