"""
Unit Tests — Corruption detector & recovery
═══════════════════════════════════════════
detect_corruption is pure, so its rules are checked one by one.
CorruptionRecoveryService runs against the in-memory repositories.

Coverage targets:
  ✅ each rule fires on its own
  ✅ reasons keep rule order when several fire
  ✅ clean prose and question-mark-only text are not corrupted
  ✅ purge deletes only corrupted chunks and re-derives total_chunks
  ✅ no clean chunk left → document reset to pending, whatever its status,
     unless it is being processed
  ✅ purge writes a CORRUPTION_CLEANUP audit record
  ✅ tenant scan covers completed documents only
  ✅ other tenants cannot purge a document
"""

from __future__ import annotations

import pytest

from knowledge.core.errors import DocumentNotFound
from knowledge.processing.corruption import detect_corruption, is_corrupted
from knowledge.services.corruption import AUDIT_ACTION, CorruptionRecoveryService

CLEAN_A = "The quarterly report covers revenue growth across all regions."
CLEAN_B = "Operating costs fell by four percent compared to last year."
OOXML   = "word/_rels/document.xml.rels Target=styles.xml Type=relationship"


# ─────────────────────────────────────────────────────────────────────────────
# Detector
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.maintenance
class TestDetectCorruption:

    def test_clean_text_is_not_corrupted(self):
        verdict = detect_corruption(CLEAN_A)
        assert verdict.is_corrupted is False
        assert verdict.reasons == ()

    def test_short_text_is_corrupted(self):
        assert detect_corruption("too short").reasons == ("too_short",)

    def test_archive_marker_detected(self):
        verdict = detect_corruption(OOXML)
        assert verdict.is_corrupted
        assert verdict.reasons == ("archive_marker",)

    def test_binary_noise_detected(self):
        verdict = detect_corruption("\x01\x02\x03\x04abcdef")
        assert "binary_noise" in verdict.reasons

    def test_noise_below_threshold_is_clean(self):
        assert not is_corrupted("\x01" + "a" * 20)

    def test_garbled_encoding_needs_question_marks_and_backslashes(self):
        garbled = "?" * 5 + "\\" * 4 + "abcdefghij"
        assert detect_corruption(garbled).reasons == ("garbled_encoding",)

    def test_question_marks_alone_are_not_garbled(self):
        assert not is_corrupted("?" * 12)

    def test_reasons_follow_rule_order(self):
        assert detect_corruption("_rels/").reasons == ("too_short", "archive_marker")


# ─────────────────────────────────────────────────────────────────────────────
# Recovery service
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.maintenance
class TestCorruptionRecovery:

    async def test_purge_deletes_only_corrupted_chunks(self, uow, make_document, add_chunks, test_tenant_id):
        doc = await make_document(processing_status="completed", total_chunks=3)
        await add_chunks(doc, [CLEAN_A, OOXML, CLEAN_B], embedding=[1.0, 0.0, 0.0])

        report = await CorruptionRecoveryService(uow).purge_document(test_tenant_id, doc.id)

        assert report.deleted_chunks == 1
        assert report.remaining_chunks == 2
        assert report.document_reset is False
        assert report.reasons == {"archive_marker": 1}

        remaining = await uow.chunks.list_for_document(test_tenant_id, doc.id)
        assert [c.content for c in remaining] == [CLEAN_A, CLEAN_B]

        stored = await uow.documents.get(test_tenant_id, doc.id)
        assert stored.processing_status == "completed"
        assert stored.total_chunks == 2

    async def test_purge_of_every_chunk_resets_document(self, uow, make_document, add_chunks, test_tenant_id):
        doc = await make_document(processing_status="completed", total_chunks=2)
        await add_chunks(doc, [OOXML, "\x00\x01\x02\x03 noise"])

        report = await CorruptionRecoveryService(uow).purge_document(test_tenant_id, doc.id)

        assert report.deleted_chunks == 2
        assert report.remaining_chunks == 0
        assert report.document_reset is True

        stored = await uow.documents.get(test_tenant_id, doc.id)
        assert stored.processing_status == "pending"
        assert stored.total_chunks == 0
        assert stored.processed_at is None

    @pytest.mark.parametrize("status", ["failed", "error"])
    async def test_unfinished_document_without_clean_chunks_reset(
        self, uow, make_document, add_chunks, test_tenant_id, status,
    ):
        doc = await make_document(processing_status=status, error_message="extraction failed")
        await add_chunks(doc, [OOXML])

        report = await CorruptionRecoveryService(uow).purge_document(test_tenant_id, doc.id)

        assert report.deleted_chunks == 1
        assert report.document_reset is True
        stored = await uow.documents.get(test_tenant_id, doc.id)
        assert stored.processing_status == "pending"
        assert stored.error_message is None

    async def test_failed_document_with_no_chunks_reset(self, uow, make_document, test_tenant_id):
        doc = await make_document(processing_status="failed")

        report = await CorruptionRecoveryService(uow).purge_document(test_tenant_id, doc.id)

        assert report.deleted_chunks == 0
        assert report.document_reset is True
        assert (await uow.documents.get(test_tenant_id, doc.id)).processing_status == "pending"

    async def test_document_being_processed_not_reset(self, uow, make_document, test_tenant_id):
        doc = await make_document(processing_status="processing")

        report = await CorruptionRecoveryService(uow).purge_document(test_tenant_id, doc.id)

        assert report.document_reset is False
        assert (await uow.documents.get(test_tenant_id, doc.id)).processing_status == "processing"

    async def test_clean_document_left_untouched(self, uow, make_document, add_chunks, test_tenant_id):
        doc = await make_document(processing_status="completed", total_chunks=2)
        await add_chunks(doc, [CLEAN_A, CLEAN_B])

        report = await CorruptionRecoveryService(uow).purge_document(test_tenant_id, doc.id)

        assert report.deleted_chunks == 0
        assert report.remaining_chunks == 2
        assert report.document_reset is False

    async def test_purge_writes_audit_record(self, uow, make_document, add_chunks, test_tenant_id, test_user_id):
        doc = await make_document(title="Policy", processing_status="completed", total_chunks=2)
        await add_chunks(doc, [CLEAN_A, OOXML])

        await CorruptionRecoveryService(uow).purge_document(
            test_tenant_id, doc.id, user_id=test_user_id, mps_number="MPS-7", reason="manual",
        )

        entries = await uow.audit.list(test_tenant_id, action=AUDIT_ACTION)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.user_id == test_user_id
        assert entry.resource == f"document:{doc.id}"
        assert entry.metadata["deleted_chunks"] == 1
        assert entry.metadata["document_title"] == "Policy"
        assert entry.metadata["mps_number"] == "MPS-7"
        assert uow.commits >= 1

    async def test_other_tenant_cannot_purge(self, uow, make_document, add_chunks, other_tenant_id):
        doc = await make_document(processing_status="completed")
        await add_chunks(doc, [OOXML])

        with pytest.raises(DocumentNotFound):
            await CorruptionRecoveryService(uow).purge_document(other_tenant_id, doc.id)

        assert await uow.chunks.count(doc.tenant_id, doc.id) == 1

    async def test_scan_covers_completed_documents_only(self, uow, make_document, add_chunks, test_tenant_id):
        damaged = await make_document(file_name="a.txt", processing_status="completed", total_chunks=2)
        healthy = await make_document(file_name="b.txt", processing_status="completed", total_chunks=1)
        pending = await make_document(file_name="c.txt", processing_status="pending")
        await add_chunks(damaged, [CLEAN_A, OOXML])
        await add_chunks(healthy, [CLEAN_B])
        await add_chunks(pending, [OOXML])

        scan = await CorruptionRecoveryService(uow).scan_tenant(test_tenant_id)

        assert scan.documents_scanned == 2
        assert scan.total_deleted == 1
        assert scan.documents_reset == 0
        assert [r.document_id for r in scan.reports] == [damaged.id]
        assert scan.failures == []
        # pending documents are not part of the scan
        assert await uow.chunks.count(test_tenant_id, pending.id) == 1
