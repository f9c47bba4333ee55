from typing import Optional

from loguru import logger
from meili_task_poller.errors import OperationFailedError
from meili_task_poller.meili_client import MeiliClient
from meili_task_poller.models import PollConfig, ProvisionedKeys

PRODUCT_INDEX_SETTINGS = {
    "searchableAttributes": [
        "title",
        "description",
        "tags",
        "category",
        "condition",
    ],
    "filterableAttributes": [
        "category",
        "condition",
        "originalPrice",
        "discountedPrice",
        "discount",
        "userId",
        "stock",
    ],
    "sortableAttributes": [
        "originalPrice",
        "discountedPrice",
        "createdAt",
        "stock",
        "discount",
    ],
    "rankingRules": [
        "words",
        "typo",
        "proximity",
        "attribute",
        "sort",
        "exactness",
    ],
}


class CatalogProvisioner:
    """Creates and configures the product catalog index and its API keys"""

    def __init__(
        self,
        client: MeiliClient,
        poll_config: Optional[PollConfig] = None,
        index_uid: str = "products",
        health_attempts: int = 30,
        health_delay: float = 2.0,
    ):
        self.client = client
        self.poll_config = poll_config or PollConfig()
        self.index_uid = index_uid
        self.health_attempts = health_attempts
        self.health_delay = health_delay
        self.logger = logger

    async def ensure_index(self) -> None:
        task_uid = await self.client.create_index(self.index_uid, primary_key="id")
        result = await self.client.wait_for_task(task_uid, self.poll_config)
        if result.success:
            self.logger.info(f"Index {self.index_uid!r} created")
            return
        if result.error is not None and result.error.code == "index_already_exists":
            self.logger.info(f"Index {self.index_uid!r} already exists")
            return
        raise OperationFailedError(
            f"Creating index {self.index_uid!r} failed: {result.error.message}",
            result=result,
        )

    async def configure_settings(self) -> None:
        task_uid = await self.client.update_settings(
            self.index_uid, PRODUCT_INDEX_SETTINGS
        )
        result = await self.client.wait_for_task(task_uid, self.poll_config)
        if not result.success:
            raise OperationFailedError(
                f"Configuring index {self.index_uid!r} failed: {result.error.message}",
                result=result,
            )
        self.logger.info(f"Index {self.index_uid!r} settings configured")

    async def create_keys(self) -> ProvisionedKeys:
        search_key = await self.client.create_key(
            description="Frontend Search Key",
            actions=["search"],
            indexes=[self.index_uid],
        )
        self.logger.info("Search-only key created")
        admin_key = await self.client.create_key(
            description="Backend Admin Key",
            actions=["*"],
            indexes=["*"],
        )
        self.logger.info("Admin key created")
        return ProvisionedKeys(search_key=search_key, admin_key=admin_key)

    async def provision(self) -> ProvisionedKeys:
        await self.client.wait_until_healthy(self.health_attempts, self.health_delay)
        await self.ensure_index()
        await self.configure_settings()
        return await self.create_keys()
