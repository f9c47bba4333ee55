import asyncio

from meili_task_poller.config import get_settings
from meili_task_poller.errors import PollerError
from meili_task_poller.log import setup_logging
from meili_task_poller.meili_client import MeiliClient
from meili_task_poller.models import PollConfig
from meili_task_poller.poller import OperationPoller
from meili_task_poller.provision import CatalogProvisioner
from task_server import TaskServer


async def status_changed(status_response):
    print(f"Task {status_response.handle} status changed to: {status_response.status.value}")
    print(f"Elapsed time: {status_response.elapsed_time:.6f}s")


async def main():
    setup_logging(get_settings().LOG_LEVEL)

    PORT = 8000
    server = TaskServer(statuses=["enqueued", "processing", "processing", "succeeded"])
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = PollConfig(interval=0.5, max_wait=10.0, backoff_multiplier=2.0, max_interval=2.0)

    try:
        async with MeiliClient(f"http://localhost:{PORT}") as client:
            try:
                keys = await CatalogProvisioner(client, config).provision()
                print(f"Search key: {keys.search_key}")

                task_uid = await client.create_dump()
                poller = OperationPoller(config, on_status_change=status_changed)
                result = await poller.poll(task_uid, client.get_task)
                print(f"Final outcome: {result.outcome.value}")
                print(f"Total time: {result.elapsed_time:.6f}s over {result.polls} polls")
            except TimeoutError as e:
                print(f"Polling timed out: {e}")
            except PollerError as e:
                print(f"Error occurred: {e.to_error_dict()}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
