"""
Unit Tests — RequeueOrchestrator
════════════════════════════════
Coverage targets:
  ✅ legacy-bucket object moved to the canonical key, chunks purged
  ✅ already_canonical / relinked / not_found path outcomes
  ✅ old object deleted only after the new path is committed
  ✅ older org/<tenant>/uploads layout found as a candidate
  ✅ attempt counter stamped; limit → RequeueLimitExceeded
  ✅ trigger failure recorded in steps, never raised
  ✅ reprocess: forced purge vs. chunk-keeping, publish failure → error
  ✅ stale scan: immediate first retry, back-off, limit → failed
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from knowledge.core.errors import DocumentNotFound, RequeueLimitExceeded
from knowledge.repositories.base import utcnow
from knowledge.services.requeue import RequeueOrchestrator, requeue_attempts

PRIMARY = "documents"
LEGACY  = "ai_documents"


def _orchestrator(uow, storage, publisher, **kwargs) -> RequeueOrchestrator:
    return RequeueOrchestrator(
        uow, storage, publisher,
        primary_bucket=PRIMARY,
        legacy_buckets=[LEGACY],
        **kwargs,
    )


@pytest.mark.unit
@pytest.mark.requeue
class TestRequeue:

    async def test_legacy_object_repaired(
        self, uow, storage, mock_publisher, make_document, add_chunks, test_tenant_id, test_user_id,
    ):
        doc = await make_document(file_name="policy.pdf", file_path="old/policy.pdf", processing_status="failed")
        await add_chunks(doc, ["stale passage one", "stale passage two"])
        storage.objects[(LEGACY, "old/policy.pdf")] = b"%PDF-1.4"

        result = await _orchestrator(uow, storage, mock_publisher).requeue(
            test_tenant_id, doc.id, user_id=test_user_id,
        )

        expected = f"tenant/{test_tenant_id}/uploads/policy.pdf"
        assert result.steps["path_repair"] == "repaired"
        assert result.repaired is True
        assert result.storage_path == expected
        assert result.expected_path == expected
        assert result.processing_triggered is True
        assert storage.objects == {(PRIMARY, expected): b"%PDF-1.4"}

        stored = await uow.documents.get(test_tenant_id, doc.id)
        assert stored.file_path == expected
        assert stored.processing_status == "pending"
        assert stored.total_chunks == 0
        assert requeue_attempts(stored) == 1
        assert stored.metadata["last_requeue_user_id"] == test_user_id
        assert stored.metadata["last_requeue_request_id"] == result.request_id
        assert await uow.chunks.count(test_tenant_id, doc.id) == 0

        mock_publisher.publish_processing.assert_awaited_once_with(
            test_tenant_id, doc.id, force_reprocess=False,
        )
        [entry] = await uow.audit.list(test_tenant_id, action="requeue")
        assert entry.metadata["attempt"] == 1

    async def test_second_requeue_is_already_canonical(
        self, uow, storage, mock_publisher, make_document, test_tenant_id,
    ):
        doc = await make_document(file_name="policy.pdf", file_path="old/policy.pdf")
        storage.objects[(LEGACY, "old/policy.pdf")] = b"data"
        orchestrator = _orchestrator(uow, storage, mock_publisher)

        await orchestrator.requeue(test_tenant_id, doc.id)
        result = await orchestrator.requeue(test_tenant_id, doc.id)

        assert result.steps["path_repair"] == "already_canonical"
        assert result.repaired is False
        assert result.processing_triggered is True
        assert requeue_attempts(await uow.documents.get(test_tenant_id, doc.id)) == 2

    async def test_existing_canonical_object_relinked(
        self, uow, storage, mock_publisher, make_document, test_tenant_id,
    ):
        doc = await make_document(file_name="plan.docx", file_path="somewhere/else/plan.docx")
        storage.objects[(PRIMARY, f"tenant/{test_tenant_id}/uploads/plan.docx")] = b"data"

        result = await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        assert result.steps["path_repair"] == "relinked"
        assert result.repaired is True
        stored = await uow.documents.get(test_tenant_id, doc.id)
        assert stored.file_path == f"tenant/{test_tenant_id}/uploads/plan.docx"

    async def test_older_org_layout_is_a_candidate(
        self, uow, storage, mock_publisher, make_document, test_tenant_id,
    ):
        doc = await make_document(file_name="memo.txt", file_path=None)
        storage.objects[(LEGACY, f"org/{test_tenant_id}/uploads/memo.txt")] = b"memo"

        result = await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        assert result.steps["path_repair"] == "repaired"
        assert (PRIMARY, f"tenant/{test_tenant_id}/uploads/memo.txt") in storage.objects

    async def test_failed_path_update_keeps_old_object(
        self, uow, storage, mock_publisher, make_document, test_tenant_id, monkeypatch,
    ):
        doc = await make_document(file_name="policy.pdf", file_path="old/policy.pdf")
        storage.objects[(LEGACY, "old/policy.pdf")] = b"%PDF-1.4"
        update = uow.documents.update

        async def update_without_path(tenant_id, document_id, **values):
            if "file_path" in values:
                raise RuntimeError("database unavailable")
            return await update(tenant_id, document_id, **values)

        monkeypatch.setattr(uow.documents, "update", update_without_path)

        result = await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        assert result.steps["path_repair"].startswith("failed")
        assert storage.objects[(LEGACY, "old/policy.pdf")] == b"%PDF-1.4"
        assert (await uow.documents.get(test_tenant_id, doc.id)).file_path == "old/policy.pdf"
        assert result.processing_triggered is True

    async def test_old_object_delete_failure_is_not_fatal(
        self, uow, storage, mock_publisher, make_document, test_tenant_id,
    ):
        doc = await make_document(file_name="policy.pdf", file_path="old/policy.pdf")
        storage.objects[(LEGACY, "old/policy.pdf")] = b"%PDF-1.4"
        storage.fail_on = {"delete_object"}

        result = await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        expected = f"tenant/{test_tenant_id}/uploads/policy.pdf"
        assert result.steps["path_repair"] == "repaired"
        assert (await uow.documents.get(test_tenant_id, doc.id)).file_path == expected
        assert (LEGACY, "old/policy.pdf") in storage.objects
        assert (PRIMARY, expected) in storage.objects

    async def test_not_found_still_triggers(self, uow, storage, mock_publisher, make_document, test_tenant_id):
        doc = await make_document(file_name="lost.pdf", file_path="gone/lost.pdf")

        result = await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        assert result.steps["path_repair"] == "not_found"
        assert result.repaired is False
        assert result.storage_path == "gone/lost.pdf"
        assert result.processing_triggered is True
        stored = await uow.documents.get(test_tenant_id, doc.id)
        assert stored.metadata["path_repair"] == "not_found"

    async def test_limit_reached_raises(self, uow, storage, mock_publisher, make_document, test_tenant_id):
        doc = await make_document(metadata={"requeue_attempts": 3})

        with pytest.raises(RequeueLimitExceeded):
            await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        mock_publisher.publish_processing.assert_not_awaited()

    async def test_trigger_failure_recorded_in_steps(
        self, uow, storage, mock_publisher, make_document, test_tenant_id,
    ):
        doc = await make_document()
        mock_publisher.publish_processing.side_effect = ConnectionError("broker down")

        result = await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, doc.id)

        assert result.processing_triggered is False
        assert result.steps["trigger"].startswith("failed:")
        assert result.steps["reset_status"] == "pending"
        assert result.steps["metadata"] == "stamped"

    async def test_other_tenant_document_not_found(
        self, uow, storage, mock_publisher, make_document, other_tenant_id, test_tenant_id,
    ):
        theirs = await make_document(tenant_id=other_tenant_id)

        with pytest.raises(DocumentNotFound):
            await _orchestrator(uow, storage, mock_publisher).requeue(test_tenant_id, theirs.id)


@pytest.mark.unit
@pytest.mark.requeue
class TestReprocess:

    async def test_forced_reprocess_purges(
        self, uow, storage, mock_publisher, make_document, add_chunks, test_tenant_id,
    ):
        doc = await make_document(processing_status="completed", total_chunks=2)
        await add_chunks(doc, ["first passage text", "second passage text"])

        result = await _orchestrator(uow, storage, mock_publisher).reprocess(
            test_tenant_id, doc.id, force_reprocess=True,
        )

        assert result.processing_status == "pending"
        assert result.processing_triggered is True
        assert result.purged_chunks == 2
        assert await uow.chunks.count(test_tenant_id, doc.id) == 0
        mock_publisher.publish_processing.assert_awaited_once_with(
            test_tenant_id, doc.id, force_reprocess=True,
        )
        [entry] = await uow.audit.list(test_tenant_id, action="force_reprocess")
        assert entry.metadata["previous_status"] == "completed"

    async def test_plain_reprocess_keeps_chunks(
        self, uow, storage, mock_publisher, make_document, add_chunks, test_tenant_id,
    ):
        doc = await make_document(processing_status="failed", total_chunks=1)
        await add_chunks(doc, ["kept passage text"])

        result = await _orchestrator(uow, storage, mock_publisher).reprocess(test_tenant_id, doc.id)

        assert result.processing_status == "pending"
        assert result.purged_chunks == 0
        assert await uow.chunks.count(test_tenant_id, doc.id) == 1

    async def test_publish_failure_marks_error(self, uow, storage, mock_publisher, make_document, test_tenant_id):
        doc = await make_document(processing_status="failed")
        mock_publisher.publish_processing.side_effect = ConnectionError("broker down")

        result = await _orchestrator(uow, storage, mock_publisher).reprocess(test_tenant_id, doc.id)

        assert result.processing_status == "error"
        assert result.processing_triggered is False
        assert result.message.startswith("Processing could not be queued")


@pytest.mark.unit
@pytest.mark.requeue
class TestStaleScan:

    async def test_backoff_and_limit(self, uow, storage, mock_publisher, make_document, test_tenant_id):
        now = utcnow()
        first   = await make_document(title="a", updated_at=now - timedelta(minutes=10))
        retried = await make_document(title="b", updated_at=now - timedelta(minutes=15),
                                      metadata={"requeue_attempts": 1})
        spent   = await make_document(title="c", updated_at=now - timedelta(minutes=15),
                                      metadata={"requeue_attempts": 3})
        await make_document(title="d", updated_at=now - timedelta(minutes=1))
        waiting = await make_document(title="e", updated_at=now - timedelta(minutes=15),
                                      metadata={"requeue_attempts": 2})
        orchestrator = _orchestrator(uow, storage, mock_publisher, stale_minutes=5, backoff_base=300)

        report = await orchestrator.requeue_stale(now=now)

        assert report.as_dict() == {"scanned": 4, "requeued": 2, "deferred": 1, "failed": 1, "errors": 0}
        assert mock_publisher.publish_processing.await_count == 2
        assert requeue_attempts(await uow.documents.get(test_tenant_id, first.id)) == 1
        assert requeue_attempts(await uow.documents.get(test_tenant_id, retried.id)) == 2

        exhausted = await uow.documents.get(test_tenant_id, spent.id)
        assert exhausted.processing_status == "failed"
        assert exhausted.error_message == "Requeue limit exceeded after 3 attempts"

        untouched = await uow.documents.get(test_tenant_id, waiting.id)
        assert untouched.processing_status == "pending"
        assert requeue_attempts(untouched) == 2

    async def test_scan_covers_every_tenant(
        self, uow, storage, mock_publisher, make_document, test_tenant_id, other_tenant_id,
    ):
        stale = utcnow() - timedelta(minutes=30)
        await make_document(updated_at=stale)
        await make_document(tenant_id=other_tenant_id, updated_at=stale)

        report = await _orchestrator(uow, storage, mock_publisher).requeue_stale()

        assert report.requeued == 2
        called = {c.args[0] for c in mock_publisher.publish_processing.await_args_list}
        assert called == {test_tenant_id, other_tenant_id}
