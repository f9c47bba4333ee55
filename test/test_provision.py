from typing import AsyncGenerator

import pytest
import pytest_asyncio
from meili_task_poller.errors import OperationFailedError
from meili_task_poller.meili_client import MeiliClient
from meili_task_poller.models import PollConfig
from meili_task_poller.provision import PRODUCT_INDEX_SETTINGS, CatalogProvisioner
from task_server import TaskServer

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[TaskServer, None]:
    port = unused_tcp_port_factory()
    server_instance = TaskServer(unhealthy_checks=1)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> PollConfig:
    return PollConfig(interval=0.02, max_wait=5.0)


@pytest.mark.asyncio
async def test_provision_creates_index_settings_and_keys(server, config):
    """Test provisioning of the product index, its settings and keys."""
    server_instance, port = server

    async with MeiliClient(BASE_URL_TEMPLATE.format(port)) as client:
        provisioner = CatalogProvisioner(client, config, health_delay=0.01)
        keys = await provisioner.provision()

    assert server_instance.indexes == {"products": {"primaryKey": "id"}}
    assert server_instance.settings["products"] == PRODUCT_INDEX_SETTINGS
    search_key, admin_key = server_instance.keys
    assert keys.search_key == search_key["key"]
    assert keys.admin_key == admin_key["key"]
    assert search_key["actions"] == ["search"]
    assert search_key["indexes"] == ["products"]
    assert admin_key["actions"] == ["*"]


@pytest.mark.asyncio
async def test_provision_is_rerunnable(server, config):
    """Test that provisioning an existing index is accepted."""
    server_instance, port = server

    async with MeiliClient(BASE_URL_TEMPLATE.format(port)) as client:
        provisioner = CatalogProvisioner(client, config, health_delay=0.01)
        await provisioner.provision()
        await provisioner.provision()

    assert list(server_instance.indexes) == ["products"]
    assert len(server_instance.keys) == 4


@pytest.mark.asyncio
async def test_failed_settings_update_raises(server, config):
    """Test that a failed settings task aborts provisioning."""
    server_instance, port = server

    async with MeiliClient(BASE_URL_TEMPLATE.format(port)) as client:
        provisioner = CatalogProvisioner(client, config, index_uid="catalog")
        await provisioner.ensure_index()
        server_instance.statuses = ["processing", "failed"]

        with pytest.raises(OperationFailedError) as exc_info:
            await provisioner.configure_settings()

    assert exc_info.value.result.error.code == "internal"
    assert exc_info.value.polls == 2
