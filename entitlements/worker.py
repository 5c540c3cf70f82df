"""Background worker process.

RUN:  python -m entitlements.worker

The API hands two kinds of work to this process through the task queue:

  terminal_provisioning        create the user's account on the terminal
                               service after registration
  subscription_reconciliation  re-read a provider subscription whose local
                               row could not be committed (provider call
                               timed out, or the database write failed)

Same image, different command:
  api:    uvicorn entitlements.main:app --host 0.0.0.0 --port 8000
  worker: python -m entitlements.worker

A failed task is logged and dropped.  Reconciliation is repeated by the
provider's own webhook redeliveries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from entitlements.core.config import SETTINGS
from entitlements.core.logging import setup_logging
from entitlements.db.engine import lifespan_db
from entitlements.db.redis import lifespan_redis
from entitlements.services.task_queue import SUBSCRIPTION_RECONCILIATION, TERMINAL_PROVISIONING
from entitlements.wiring import get_core

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("worker")


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(TERMINAL_PROVISIONING)
async def handle_terminal_provisioning(payload: dict) -> None:
    await get_core().terminal.provision_user(payload["user_id"], payload["email"])


@register_handler(SUBSCRIPTION_RECONCILIATION)
async def handle_reconciliation(payload: dict) -> None:
    await get_core().webhooks.reconcile(payload)


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def process_one(queue_name: str, timeout: int = 1) -> bool:
    """Dequeue and run at most one task.  Returns False when the queue was empty."""
    task = await get_core().tasks.dequeue(queue_name, timeout=timeout)
    if task is None:
        return False

    handler = HANDLERS[queue_name]
    try:
        await handler(task.payload)
        logger.info("Task %s on [%s] completed", task.id, queue_name)
    except Exception:
        logger.exception("Task %s on [%s] failed", task.id, queue_name)
    return True


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    async with lifespan_db():
        async with lifespan_redis():
            core = get_core()
            await core.startup()
            logger.info("Worker started, listening on queues: %s", queues)
            try:
                while True:
                    busy = [await process_one(queue_name) for queue_name in queues]
                    if not any(busy):
                        # The in-memory queue returns at once instead of blocking.
                        await asyncio.sleep(0.5)
            finally:
                await core.shutdown()


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
