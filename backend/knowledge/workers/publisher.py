"""
Task publisher — the only way services enqueue background work.

Services receive a publisher instance instead of importing Celery tasks, so
the API, the workers and the tests can each hand in their own.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

logger = logging.getLogger(__name__)


class TaskPublisher:

    async def publish_processing(
        self,
        tenant_id:       UUID,
        document_id:     UUID,
        *,
        force_reprocess: bool = False,
    ) -> None:
        """
        Dispatch process_document to the ingest queue.
        apply_async blocks on the broker, so it runs in the default executor.
        """
        from knowledge.workers.tasks import process_document

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(
                kwargs={
                    "document_id":     str(document_id),
                    "tenant_id":       str(tenant_id),
                    "force_reprocess": force_reprocess,
                },
                countdown=2,
            ),
        )
        logger.info(
            "Processing task published | doc=%s tenant=%s force=%s",
            document_id, tenant_id, force_reprocess,
        )
