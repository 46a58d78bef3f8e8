"""
Background worker that processes sync jobs.
Keeps the remote catalog and webhook subscription in line with the local store:
save events enqueue jobs, the worker executes whatever each resource needs and
reschedules failures with exponential back-off.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from app.config import settings
from app.exceptions import ConfigurationError
from app.models.local import ELIGIBLE_PRODUCT_TYPES, PRICED_PRODUCT_TYPES
from app.resources.base import Gateway
from app.resources.price import Price
from app.resources.product import Product
from app.resources.webhook import Webhook
from app.services.local_store import LocalStore, get_local_store
from app.services.slack_service import SlackNotificationService, get_slack_service
from app.utils.retry import backoff_delay

logger = structlog.get_logger()

HOOK_UPDATE_PRODUCT = "update_product"
HOOK_UPDATE_PRICE = "update_price"
HOOK_UPDATE_WEBHOOK = "update_webhook"

WEBHOOK_GROUP = "webhook"


def product_group(product_id: int) -> str:
    return f"product-{product_id}"


class SyncJob(BaseModel):
    """A scheduled hook invocation."""
    hook: str
    args: Tuple[Any, ...] = ()
    group: str = ""
    retries: int = 0
    scheduled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncQueue:
    """In-process job queue with first-attempt deduplication and back-off retries."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        multiplier: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_retry_attempts
        self.initial_delay = (
            initial_delay if initial_delay is not None else settings.retry_initial_delay_seconds
        )
        self.multiplier = multiplier if multiplier is not None else settings.retry_backoff_multiplier
        self.max_delay = max_delay if max_delay is not None else settings.retry_max_delay_seconds
        self.jobs: List[SyncJob] = []

    def __len__(self) -> int:
        return len(self.jobs)

    def enqueue(
        self, hook: str, args: Tuple[Any, ...] = (), group: str = "", retries: int = 0
    ) -> Optional[SyncJob]:
        """
        Schedule a hook.

        First attempts run as soon as possible and are unique per (hook, args);
        retries are delayed exponentially and never deduplicated.

        Args:
            hook: Hook name
            args: Positional hook arguments
            group: Group key; jobs of one group run sequentially
            retries: Attempts that already failed

        Returns:
            The scheduled job, the already pending duplicate, or None if the
            job has exhausted its attempts
        """
        args = tuple(args)

        if retries >= self.max_attempts:
            logger.error(
                "Sync job exhausted retries, dropping",
                hook=hook,
                args=list(args),
                group=group,
                retries=retries,
            )
            return None

        now = datetime.now(timezone.utc)

        if retries == 0:
            for job in self.jobs:
                if job.hook == hook and job.args == args and job.retries == 0:
                    logger.debug("Sync job already pending", hook=hook, args=list(args))
                    return job
            scheduled_at = now
        else:
            delay = backoff_delay(retries, self.initial_delay, self.multiplier, self.max_delay)
            scheduled_at = now + timedelta(seconds=delay)

        job = SyncJob(hook=hook, args=args, group=group, retries=retries, scheduled_at=scheduled_at)
        self.jobs.append(job)

        logger.debug(
            "Sync job enqueued",
            hook=hook,
            args=list(args),
            group=group,
            retries=retries,
            scheduled_at=scheduled_at.isoformat(),
        )
        return job

    def unschedule_all(self, hook: str) -> int:
        """Remove every pending job for a hook, returning how many were removed."""
        before = len(self.jobs)
        self.jobs = [job for job in self.jobs if job.hook != hook]
        return before - len(self.jobs)

    def due(self, now: Optional[datetime] = None) -> List[SyncJob]:
        """Pop every job scheduled at or before ``now``, oldest first."""
        now = now or datetime.now(timezone.utc)
        ready = sorted(
            (job for job in self.jobs if job.scheduled_at <= now), key=lambda job: job.scheduled_at
        )
        ready_ids = {id(job) for job in ready}
        self.jobs = [job for job in self.jobs if id(job) not in ready_ids]
        return ready


_sync_queue: Optional[SyncQueue] = None


def get_sync_queue() -> SyncQueue:
    """Get or create the process-wide sync queue."""
    global _sync_queue
    if _sync_queue is None:
        _sync_queue = SyncQueue()
    return _sync_queue


class SyncWorker:
    """Worker that processes the sync queue and reconciles remote resources."""

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        queue: Optional[SyncQueue] = None,
        transport=None,
        slack: Optional[SlackNotificationService] = None,
    ):
        """Initialize sync worker."""
        self.store = store or get_local_store()
        self.queue = queue if queue is not None else get_sync_queue()
        self.transport = transport
        self.slack = slack or get_slack_service()
        self.running = False
        self.hooks: Dict[str, Callable[..., Any]] = {
            HOOK_UPDATE_PRODUCT: self.update_product,
            HOOK_UPDATE_PRICE: self.update_price,
            HOOK_UPDATE_WEBHOOK: self.update_webhook,
        }

    @asynccontextmanager
    async def gateway(self) -> AsyncIterator[Gateway]:
        gateway = Gateway.from_settings(self.store, transport=self.transport)
        try:
            yield gateway
        finally:
            await gateway.client.close()

    async def start(self):
        """Start the sync worker loop."""
        self.running = True
        logger.info("Sync worker started")

        try:
            await self.catch_up()
        except Exception as e:
            logger.error("Failed to enqueue outstanding sync work", error=str(e))

        while self.running:
            try:
                await self.process_sync_queue()
            except Exception as e:
                logger.error("Error in sync worker loop", error=str(e))

            # Wait before next poll
            await asyncio.sleep(settings.sync_worker_interval_seconds)

    async def stop(self):
        """Stop the sync worker."""
        self.running = False
        logger.info("Sync worker stopped")

    async def process_sync_queue(self, now: Optional[datetime] = None) -> int:
        """
        Run every due job.
        Groups run concurrently, jobs within a group run in order.

        Returns:
            Number of jobs run
        """
        jobs = self.queue.due(now)
        if not jobs:
            return 0

        logger.info("Processing sync jobs", count=len(jobs))

        groups: Dict[str, List[SyncJob]] = defaultdict(list)
        for job in jobs:
            groups[job.group].append(job)

        await asyncio.gather(*(self._run_group(group_jobs) for group_jobs in groups.values()))
        return len(jobs)

    async def _run_group(self, jobs: List[SyncJob]) -> None:
        for job in jobs:
            try:
                await self.process_job(job)
            except Exception as e:
                logger.error(
                    "Failed to process sync job",
                    hook=job.hook,
                    args=list(job.args),
                    group=job.group,
                    retries=job.retries,
                    error=str(e),
                    exception_type=type(e).__name__,
                )

    async def process_job(self, job: SyncJob) -> None:
        """
        Run a single sync job.

        Args:
            job: SyncJob to process
        """
        hook = self.hooks.get(job.hook)
        if hook is None:
            logger.error("Unknown sync hook", hook=job.hook)
            return
        await hook(*job.args, retries=job.retries)

    async def _retry(self, hook: str, args: Tuple[Any, ...], group: str, retries: int, error: Exception):
        job = self.queue.enqueue(hook, args, group=group, retries=retries)
        if job is None:
            await self.slack.send_sync_failure_alert(
                error_message=str(error), hook=hook, group=group, retries=retries
            )

    def enqueue_product(self, product_id: int, retries: int = 0) -> Optional[SyncJob]:
        return self.queue.enqueue(
            HOOK_UPDATE_PRODUCT, (product_id,), group=product_group(product_id), retries=retries
        )

    def enqueue_price(self, product_id: int, retries: int = 0) -> Optional[SyncJob]:
        return self.queue.enqueue(
            HOOK_UPDATE_PRICE, (product_id,), group=product_group(product_id), retries=retries
        )

    def enqueue_webhook(self, retries: int = 0) -> Optional[SyncJob]:
        # A fresh request supersedes anything already scheduled
        if retries == 0:
            self.queue.unschedule_all(HOOK_UPDATE_WEBHOOK)
        return self.queue.enqueue(HOOK_UPDATE_WEBHOOK, (), group=WEBHOOK_GROUP, retries=retries)

    async def update_product(self, product_id: int, retries: int = 0) -> None:
        """
        Sync one catalog product.

        Raises:
            Exception: Any failure, after a retry has been scheduled
        """
        try:
            async with self.gateway() as gateway:
                if not gateway.client.api_key:
                    raise ConfigurationError("API Key is not set")

                local = self.store.get_product(product_id)
                if local is None:
                    return

                product = Product.from_local(gateway, local)
                action = product.needs()

                # The change may have been reverted in the meantime
                if not product.can(action):
                    return

                await product.exec(action)
        except Exception as e:
            await self._retry(HOOK_UPDATE_PRODUCT, (product_id,), product_group(product_id), retries + 1, e)
            raise

        # The price may depend on the product that was just synced
        await self.on_product_saved(product_id)

    async def update_price(self, product_id: int, retries: int = 0) -> None:
        """
        Sync the price of one product or variation.

        Raises:
            Exception: Any failure, after a retry has been scheduled
        """
        try:
            async with self.gateway() as gateway:
                if not gateway.client.api_key:
                    raise ConfigurationError("API Key is not set")

                local = self.store.get_product(product_id)
                if local is None:
                    return

                price = Price.from_local(gateway, local)
                action = price.needs()

                if not price.can(action):
                    return

                await price.exec(action)
        except Exception as e:
            await self._retry(HOOK_UPDATE_PRICE, (product_id,), product_group(product_id), retries + 1, e)
            raise

    async def update_webhook(self, retries: int = 0) -> None:
        """
        Sync the webhook subscription of the configured mode.

        Raises:
            Exception: Any failure, after a retry has been scheduled
        """
        try:
            async with self.gateway() as gateway:
                if not gateway.client.api_key:
                    raise ConfigurationError("API Key is not set")

                webhook = Webhook.from_local(gateway)
                action = webhook.needs()

                if not webhook.can(action):
                    return

                await webhook.exec(action)
        except Exception as e:
            await self._retry(HOOK_UPDATE_WEBHOOK, (), WEBHOOK_GROUP, retries + 1, e)
            raise

    async def on_product_saved(self, product_id: int) -> List[SyncJob]:
        """
        Enqueue the first piece of work a saved product needs.

        The product itself goes first, then its price, then the price of each
        variation.

        Returns:
            Jobs that were enqueued
        """
        async with self.gateway() as gateway:
            if not gateway.client.api_key:
                return []

            local = self.store.get_product(product_id)
            if local is None:
                return []

            if local.type == "variation":
                return await self.on_variation_saved(product_id)

            product = Product.from_local(gateway, local)
            if product.can(product.needs()):
                return [job for job in [self.enqueue_product(product_id)] if job]

            price = Price.from_local(gateway, local)
            if price.can(price.needs()):
                return [job for job in [self.enqueue_price(product_id)] if job]

            jobs: List[SyncJob] = []
            for variation_id in local.children:
                variation = self.store.get_product(variation_id)
                if variation is None:
                    continue
                variation_price = Price.from_local(gateway, variation)
                if variation_price.can(variation_price.needs()):
                    job = self.enqueue_price(variation_id)
                    if job:
                        jobs.append(job)
            return jobs

    async def on_variation_saved(self, product_id: int) -> List[SyncJob]:
        """Enqueue a variation's price if it needs work."""
        async with self.gateway() as gateway:
            if not gateway.client.api_key:
                return []

            local = self.store.get_product(product_id)
            if local is None:
                return []

            price = Price.from_local(gateway, local)
            if not price.can(price.needs()):
                return []

            job = self.enqueue_price(product_id)
            return [job] if job else []

    async def on_gateway_settings_changed(self, was_enabled: bool, enabled: bool) -> List[SyncJob]:
        """
        React to the gateway being switched on or off.

        Activation syncs the webhook and every catalog product; deactivation
        syncs the webhook so the subscription is removed.

        Returns:
            Jobs that were enqueued
        """
        if was_enabled == enabled:
            return []

        jobs: List[SyncJob] = []
        async with self.gateway() as gateway:
            if not gateway.client.api_key:
                return []

            webhook = Webhook.from_local(gateway)
            if webhook.can(webhook.needs()):
                job = self.enqueue_webhook()
                if job:
                    jobs.append(job)

        if enabled:
            types = set(ELIGIBLE_PRODUCT_TYPES) | set(PRICED_PRODUCT_TYPES)
            for local in self.store.list_products(types):
                if local.type == "variation":
                    continue
                jobs.extend(await self.on_product_saved(local.id))

        logger.info(
            "Gateway settings changed",
            was_enabled=was_enabled,
            enabled=enabled,
            jobs_enqueued=len(jobs),
        )
        return jobs

    async def catch_up(self) -> List[SyncJob]:
        """Enqueue everything that currently needs work for the stored gateway state."""
        enabled = self.store.get_gateway_options().enabled
        return await self.on_gateway_settings_changed(not enabled, enabled)


_sync_worker: Optional[SyncWorker] = None


def get_sync_worker() -> SyncWorker:
    """Get or create the shared sync worker (FastAPI dependency)."""
    global _sync_worker
    if _sync_worker is None:
        _sync_worker = SyncWorker()
    return _sync_worker


async def run_worker():
    """Run the sync worker."""
    worker = get_sync_worker()
    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        await worker.stop()
