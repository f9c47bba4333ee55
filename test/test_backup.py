import asyncio
import gzip
import os
import time
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from meili_task_poller.backup import DumpBackup
from meili_task_poller.errors import OperationFailedError
from meili_task_poller.meili_client import MeiliClient
from meili_task_poller.models import PollConfig
from task_server import TaskServer

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory, tmp_path) -> AsyncGenerator[TaskServer, None]:
    port = unused_tcp_port_factory()
    server_instance = TaskServer(dumps_dir=tmp_path / "dumps")
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> PollConfig:
    return PollConfig(interval=0.02, max_wait=5.0)


def make_backup(client, config, tmp_path, **kwargs) -> DumpBackup:
    return DumpBackup(
        client,
        config,
        dumps_dir=tmp_path / "dumps",
        backup_dir=tmp_path / "backups",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_backup_compresses_newest_dump(server, config, tmp_path):
    """Test a full backup run against the fake engine."""
    _, port = server

    async with MeiliClient(BASE_URL_TEMPLATE.format(port)) as client:
        target = await make_backup(client, config, tmp_path).run()

    assert target.parent == tmp_path / "backups"
    assert target.name.startswith("meili_dump_")
    assert target.name.endswith(".dump.gz")
    with gzip.open(target, "rb") as f:
        assert f.read() == b"meilisearch dump"


@pytest.mark.asyncio
async def test_failed_dump_raises(server, config, tmp_path):
    """Test that a failed dump task aborts the backup."""
    server_instance, port = server
    server_instance.statuses = ["enqueued", "failed"]

    async with MeiliClient(BASE_URL_TEMPLATE.format(port)) as client:
        with pytest.raises(OperationFailedError) as exc_info:
            await make_backup(client, config, tmp_path).run()

    assert not exc_info.value.result.success
    assert not (tmp_path / "backups").exists()


@pytest.mark.asyncio
async def test_cancelled_backup_writes_nothing(server, config, tmp_path):
    """Test that cancelling while the dump runs leaves no backup behind."""
    server_instance, port = server
    server_instance.statuses = ["processing"]
    cancel_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.1, cancel_event.set)

    async with MeiliClient(BASE_URL_TEMPLATE.format(port)) as client:
        target = await make_backup(client, config, tmp_path).run(cancel_event)

    assert target is None
    assert not (tmp_path / "backups").exists()


def test_missing_dump_file_raises(tmp_path):
    """Test that a missing dump file is reported."""
    backup = make_backup(None, None, tmp_path)

    with pytest.raises(FileNotFoundError):
        backup.latest_dump()


def test_latest_dump_picks_most_recent(tmp_path):
    """Test that the most recently modified dump is chosen."""
    dumps = tmp_path / "dumps"
    dumps.mkdir()
    old, new = dumps / "old.dump", dumps / "new.dump"
    old.write_bytes(b"old")
    new.write_bytes(b"new")
    os.utime(old, (time.time() - 60, time.time() - 60))

    assert make_backup(None, None, tmp_path).latest_dump() == new


def test_prune_removes_expired_backups_only(tmp_path):
    """Test retention pruning with find -mtime semantics."""
    backups = tmp_path / "backups"
    backups.mkdir()
    expired = backups / "meili_dump_20200101_000000.dump.gz"
    recent = backups / "meili_dump_20990101_000000.dump.gz"
    unrelated = backups / "notes.txt"
    for path in (expired, recent, unrelated):
        path.write_bytes(b"x")
    seven_and_a_half = backups / "meili_dump_20200102_000000.dump.gz"
    seven_and_a_half.write_bytes(b"x")
    ten_days_ago = time.time() - 10 * 86400
    os.utime(expired, (ten_days_ago, ten_days_ago))
    os.utime(unrelated, (ten_days_ago, ten_days_ago))
    days_ago = time.time() - 7.5 * 86400
    os.utime(seven_and_a_half, (days_ago, days_ago))

    removed = make_backup(None, None, tmp_path, retention_days=7).prune()

    assert removed == 1
    assert not expired.exists()
    assert seven_and_a_half.exists()
    assert recent.exists()
    assert unrelated.exists()
