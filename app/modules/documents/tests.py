"""
Tests para la cola de documentos electrónicos

Cubren:
- Numeración sin huecos (número inicial, último del proveedor, rango)
- Reglas de encolado (integración deshabilitada, cuota agotada)
- Envío y transiciones de estado, conteo de consumo único
- Reintento de operador, conciliación y alerta de tasa de rechazo
- Búsqueda, estadísticas y descarga con caché
- Endpoints y permisos por rol
"""
import asyncio
import json
from uuid import uuid4

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy import select, update

from app.core.config import settings
from app.database.database import AsyncSessionLocal
from app.modules.ebilling import crud as ebilling_crud
from app.modules.ebilling import service as ledger
from app.modules.ebilling.models import AlertType, EbillingAlert, OveragePolicy
from app.modules.ebilling.schemas import AssignPackageRequest, PackageCreate
from app.modules.internal_admin.models import AuditAction, InternalAuditLog
from app.modules.matias.client import get_matias_client
from app.modules.matias.schemas import MatiasConfigUpdate
from app.modules.matias.service import save_matias_config
from app.modules.documents import service
from app.modules.documents.models import (
    DocumentFile,
    DocumentKind,
    DocumentStatus,
    QueuedDocument,
    SourceType,
)
from app.modules.documents.schemas import QueueDocumentRequest


ACCEPTED_BODY = {"success": True, "data": {"cufe": "CUFE-1", "track_id": "T-1", "is_valid": 1}}


def client_factory(fake):
    async def factory(db, tenant_id):
        return await get_matias_client(db, tenant_id, transport=fake.transport)
    return factory


def sale_request(tenant_id, order_number: str = "ORD-1", kind: DocumentKind = DocumentKind.POS, **extra):
    return QueueDocumentRequest(
        tenant_id=tenant_id,
        kind=kind,
        source_type=extra.pop("source_type", SourceType.SALE),
        source_id=extra.pop("source_id", order_number.lower()),
        order_number=order_number,
        payload={"customer": {"identification_number": "222222222222"}, "lines": []},
        **extra,
    )


async def subscribe(db, tenant_id, included: int, policy: OveragePolicy = OveragePolicy.BLOCK):
    package = await ebilling_crud.create_package(
        db, PackageCreate(name=f"Paquete {included}", included_documents=included)
    )
    await ledger.assign_package_to_tenant(
        db, tenant_id, AssignPackageRequest(package_id=package.id, overage_policy=policy), actor_id=None
    )


async def accepted_document(db, tenant_id, fake, order_number: str = "ORD-1"):
    fake.routes[("POST", "/invoice")] = httpx.Response(200, json=ACCEPTED_BODY)
    document = await service.queue_document(db, sale_request(tenant_id, order_number), client_factory(fake))
    client = await get_matias_client(db, tenant_id, transport=fake.transport)
    await service.submit_document(db, document.id, client=client)
    return await service.get_document(db, document.id)


# ===== NUMERACIÓN =====

class TestNumbering:
    async def test_continues_after_provider_last_number(self, db, configured_tenant, fake):
        fake.routes[("GET", "/documents/last")] = httpx.Response(200, json={"data": {"number": 41}})
        factory = client_factory(fake)

        first = await service.queue_document(db, sale_request(configured_tenant, "ORD-1"), factory)
        second = await service.queue_document(db, sale_request(configured_tenant, "ORD-2"), factory)

        assert (first.document_number, second.document_number) == (42, 43)
        assert fake.calls.count(("GET", "/documents/last")) == 1
        assert first.request_json["document_number"] == "42"
        assert first.request_json["prefix"] == "SETP"
        assert first.request_json["resolution_number"] == "18760000001"
        assert first.status == DocumentStatus.PENDING.value

    async def test_configured_starting_number_skips_provider(self, db, configured_tenant, fake):
        await save_matias_config(db, configured_tenant, MatiasConfigUpdate(starting_number=100))
        factory = client_factory(fake)

        first = await service.queue_document(db, sale_request(configured_tenant, "ORD-1"), factory)
        second = await service.queue_document(db, sale_request(configured_tenant, "ORD-2"), factory)

        assert (first.document_number, second.document_number) == (100, 101)
        assert fake.logins == 0

    async def test_unknown_provider_history_starts_at_one(self, db, configured_tenant, fake):
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        assert document.document_number == 1

    async def test_range_exhausted(self, db, configured_tenant, fake):
        await save_matias_config(db, configured_tenant, MatiasConfigUpdate(starting_number=5, ending_number=6))
        factory = client_factory(fake)

        await service.queue_document(db, sale_request(configured_tenant, "ORD-1"), factory)
        await service.queue_document(db, sale_request(configured_tenant, "ORD-2"), factory)
        with pytest.raises(HTTPException) as exc:
            await service.queue_document(db, sale_request(configured_tenant, "ORD-3"), factory)
        assert exc.value.status_code == 400

    async def test_notes_use_their_own_series(self, db, configured_tenant, fake):
        await save_matias_config(
            db,
            configured_tenant,
            MatiasConfigUpdate(
                starting_number=10,
                credit_note_resolution_number="18760000002",
                credit_note_prefix="nc",
                credit_note_starting_number=1,
            ),
        )
        factory = client_factory(fake)

        sale = await service.queue_document(db, sale_request(configured_tenant, "ORD-1"), factory)
        note = await service.queue_document(
            db,
            sale_request(configured_tenant, "ORD-1", kind=DocumentKind.POS_CREDIT_NOTE, source_type=SourceType.REFUND),
            factory,
        )
        assert (sale.prefix, sale.document_number) == ("SETP", 10)
        assert (note.prefix, note.document_number) == ("NC", 1)


# ===== ENCOLADO =====

class TestQueueRules:
    async def test_not_configured_rejected(self, db, tenant_id, fake):
        with pytest.raises(HTTPException) as exc:
            await service.queue_document(db, sale_request(tenant_id), client_factory(fake))
        assert exc.value.status_code == 400

    async def test_disabled_integration_rejected(self, db, configured_tenant, fake):
        await save_matias_config(db, configured_tenant, MatiasConfigUpdate(is_enabled=False))
        with pytest.raises(HTTPException) as exc:
            await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        assert exc.value.status_code == 400

    async def test_missing_resolution_rejected(self, db, configured_tenant, fake):
        with pytest.raises(HTTPException) as exc:
            await service.queue_document(
                db, sale_request(configured_tenant, kind=DocumentKind.SUPPORT_DOC), client_factory(fake)
            )
        assert exc.value.status_code == 400

    async def test_quota_exhausted_blocks(self, db, configured_tenant, fake):
        await subscribe(db, configured_tenant, included=0)
        with pytest.raises(HTTPException) as exc:
            await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        assert exc.value.status_code == 402

    async def test_overage_policy_marks_document(self, db, configured_tenant, fake):
        await subscribe(db, configured_tenant, included=0, policy=OveragePolicy.ALLOW_AND_MARK_OVERAGE)
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        assert document.is_overage is True


# ===== ENVÍO =====

class TestSubmit:
    async def test_accepted_counts_usage_once(self, db, configured_tenant, fake):
        await subscribe(db, configured_tenant, included=10)
        document = await accepted_document(db, configured_tenant, fake)

        assert document.status == DocumentStatus.ACCEPTED.value
        assert document.cufe == "CUFE-1"
        assert document.qr_code.endswith("CUFE-1")
        assert document.track_id == "T-1"
        assert document.usage_counted is True

        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await service.submit_document(db, document.id, client=client)
        assert result.success is True
        assert fake.calls.count(("POST", "/invoice")) == 1

        usage = await ledger.get_current_usage_period(db, configured_tenant)
        assert usage.used_total == 1
        assert usage.used_pos == 1

    async def test_sent_without_cufe_keeps_track(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(200, json={"success": True, "data": {"track_id": "T-9"}})
        fake.routes[("GET", "/status")] = httpx.Response(200, json={"data": {"status": "processing"}})
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))

        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await service.submit_document(db, document.id, client=client)

        assert result.success is True
        assert result.status == DocumentStatus.SENT
        assert result.track_id == "T-9"
        document = await service.get_document(db, document.id)
        assert document.submitted_at is not None

    async def test_provider_rejection_fails_document(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(
            422, json={"message": "Regla FAD06 rechazada", "errors": ["FAD06"]}
        )
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))

        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await service.submit_document(db, document.id, client=client)

        assert result.success is False
        assert result.status == DocumentStatus.FAILED
        document = await service.get_document(db, document.id)
        assert "FAD06" in document.last_error_message
        assert document.last_http_status == 422
        assert document.usage_counted is False

    async def test_unavailable_client_fails_document(self, db, configured_tenant, fake):
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        await save_matias_config(db, configured_tenant, MatiasConfigUpdate(is_enabled=False))

        result = await service.submit_document(db, document.id)
        assert result.success is False
        assert result.status == DocumentStatus.FAILED

    async def test_already_validated_is_accepted(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(
            422, json={"message": "El documento ya se encuentra validado"}
        )
        fake.routes[("GET", "/status")] = httpx.Response(
            200, json={"data": {"status": "accepted", "cufe": "CUFE-OLD", "is_valid": True}}
        )
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))

        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await service.submit_document(db, document.id, client=client)

        assert result.status == DocumentStatus.ACCEPTED
        assert result.cufe == "CUFE-OLD"

    async def test_note_references_original(self, db, configured_tenant, fake):
        await save_matias_config(
            db,
            configured_tenant,
            MatiasConfigUpdate(credit_note_resolution_number="18760000002", credit_note_prefix="NC", credit_note_starting_number=1),
        )
        fake.routes[("GET", "/documents/last")] = httpx.Response(200, json={"data": {"number": 41}})
        original = await accepted_document(db, configured_tenant, fake)

        sent_bodies = []

        def credit_note(request):
            sent_bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "data": {"cufe": "CUDE-1", "is_valid": 1}})

        fake.routes[("POST", "/notes/credit")] = credit_note
        note = await service.queue_document(
            db,
            sale_request(
                configured_tenant,
                "ORD-1",
                kind=DocumentKind.POS_CREDIT_NOTE,
                source_type=SourceType.REFUND,
                original_document_id=original.id,
            ),
            client_factory(fake),
        )
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        await service.submit_document(db, note.id, client=client)

        reference = sent_bodies[0]["billing_reference"]
        assert reference["number"] == "SETP42"
        assert reference["uuid"] == "CUFE-1"
        assert reference["scheme_name"] == "CUFE-SHA384"

    async def test_queue_and_submit(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(200, json=ACCEPTED_BODY)
        result = await service.queue_and_submit(db, sale_request(configured_tenant), client_factory(fake))
        assert result.success is True
        assert result.cufe == "CUFE-1"
        assert result.document_number == 1

    async def test_process_pending_then_retry(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(200, json=ACCEPTED_BODY)
        factory = client_factory(fake)
        for order in ("ORD-1", "ORD-2"):
            await service.queue_document(db, sale_request(configured_tenant, order), factory)

        summary = await service.process_pending_documents(db, client_factory=factory)

        assert (summary.processed, summary.succeeded, summary.failed) == (2, 2, 0)
        assert fake.logins == 1
        documents, _ = await service.list_documents(db, tenant_id=configured_tenant)
        assert {d.status for d in documents} == {DocumentStatus.ACCEPTED.value}

    async def test_concurrent_submissions_send_once(self, db, configured_tenant, fake):
        await subscribe(db, configured_tenant, included=10)

        async def slow_accept(request):
            await asyncio.sleep(0.2)
            return httpx.Response(200, json=ACCEPTED_BODY)

        fake.routes[("POST", "/invoice")] = slow_accept
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))

        sessions = [AsyncSessionLocal(), AsyncSessionLocal()]
        try:
            clients = [
                await get_matias_client(session, configured_tenant, transport=fake.transport)
                for session in sessions
            ]
            results = await asyncio.gather(*(
                service.submit_document(session, document.id, client=client)
                for session, client in zip(sessions, clients)
            ))
        finally:
            for session in sessions:
                await session.close()

        assert all(result.success for result in results)
        assert fake.calls.count(("POST", "/invoice")) == 1
        usage = await ledger.get_current_usage_period(db, configured_tenant)
        assert usage.used_total == 1
        assert (await service.get_document(db, document.id)).status == DocumentStatus.ACCEPTED.value

    async def test_usage_flag_counts_once(self, db, configured_tenant, fake):
        await subscribe(db, configured_tenant, included=10)
        document = await accepted_document(db, configured_tenant, fake)

        await service._count_usage(db, document)

        usage = await ledger.get_current_usage_period(db, configured_tenant)
        assert usage.used_total == 1


# ===== REINTENTO =====

class TestRetry:
    async def test_failed_document_marked_for_retry(self, db, configured_tenant, fake, support_agent):
        fake.routes[("POST", "/invoice")] = httpx.Response(500, json={"message": "Internal error"})
        factory = client_factory(fake)
        document = await service.queue_document(db, sale_request(configured_tenant), factory)
        await service.process_pending_documents(db, client_factory=factory)

        retried = await service.retry_document(db, document.id, actor_id=support_agent.id)
        assert retried.status == DocumentStatus.RETRY.value
        assert retried.retry_count == 1

        logs = (await db.execute(select(InternalAuditLog))).scalars().all()
        assert [log.action_type for log in logs] == [AuditAction.DOC_RETRY.value]
        assert logs[0].metadata_json["previous_status"] == DocumentStatus.FAILED.value

        fake.routes[("POST", "/invoice")] = httpx.Response(200, json=ACCEPTED_BODY)
        summary = await service.process_pending_documents(db, client_factory=factory)
        assert summary.succeeded == 1
        assert (await service.get_document(db, document.id)).status == DocumentStatus.ACCEPTED.value

    async def test_accepted_document_cannot_retry(self, db, configured_tenant, fake):
        document = await accepted_document(db, configured_tenant, fake)
        with pytest.raises(HTTPException) as exc:
            await service.retry_document(db, document.id, actor_id=None)
        assert exc.value.status_code == 400
        assert (await service.get_document(db, document.id)).status == DocumentStatus.ACCEPTED.value

    async def test_unknown_document(self, db):
        with pytest.raises(HTTPException) as exc:
            await service.retry_document(db, uuid4(), actor_id=None)
        assert exc.value.status_code == 404


    async def test_retry_limit_enforced(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(500, json={"message": "Internal error"})
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        assert document.max_retries == settings.MATIAS_MAX_RETRIES

        for attempt in range(1, document.max_retries + 1):
            retried = await service.retry_document(db, document.id, actor_id=None)
            assert retried.retry_count == attempt

        with pytest.raises(HTTPException) as exc:
            await service.retry_document(db, document.id, actor_id=None)
        assert exc.value.status_code == 400
        assert "reintentos" in exc.value.detail
        assert (await service.get_document(db, document.id)).retry_count == document.max_retries

    async def test_exhausted_retries_not_reprocessed(self, db, configured_tenant, fake):
        fake.routes[("POST", "/invoice")] = httpx.Response(200, json=ACCEPTED_BODY)
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        await db.execute(
            update(QueuedDocument)
            .where(QueuedDocument.id == document.id)
            .values(status=DocumentStatus.RETRY.value, retry_count=document.max_retries + 1)
        )
        await db.commit()

        summary = await service.process_pending_documents(db, client_factory=client_factory(fake))

        assert summary.processed == 0
        assert fake.calls.count(("POST", "/invoice")) == 0
        assert (await service.get_document(db, document.id)).status == DocumentStatus.RETRY.value


# ===== CONCILIACIÓN =====

class TestReconcile:
    async def _sent_document(self, db, tenant_id, fake, track_id: str = "T-9", order_number: str = "ORD-1"):
        fake.routes[("POST", "/invoice")] = httpx.Response(200, json={"success": True, "data": {"track_id": track_id}})
        fake.routes[("GET", "/status")] = httpx.Response(200, json={"data": {"status": "processing"}})
        document = await service.queue_document(db, sale_request(tenant_id, order_number), client_factory(fake))
        client = await get_matias_client(db, tenant_id, transport=fake.transport)
        await service.submit_document(db, document.id, client=client)
        return document.id, client

    async def test_accepted_status_applied(self, db, configured_tenant, fake):
        await subscribe(db, configured_tenant, included=10)
        document_id, client = await self._sent_document(db, configured_tenant, fake)
        fake.routes[("GET", "/status/document/T-9")] = httpx.Response(
            200, json={"data": {"status": "Aceptado", "cufe": "CUFE-9"}}
        )

        document = await service.reconcile_document(db, document_id, client=client)

        assert document.status == DocumentStatus.ACCEPTED.value
        assert document.cufe == "CUFE-9"
        assert document.accepted_at is not None
        usage = await ledger.get_current_usage_period(db, configured_tenant)
        assert usage.used_total == 1

    async def test_rejected_status_applied(self, db, configured_tenant, fake):
        document_id, client = await self._sent_document(db, configured_tenant, fake)
        fake.routes[("GET", "/status/document/T-9")] = httpx.Response(
            200, json={"data": {"status": "rejected", "status_message": "Regla FAK24"}}
        )

        document = await service.reconcile_document(db, document_id, client=client)
        assert document.status == DocumentStatus.REJECTED.value
        assert document.last_error_message == "Regla FAK24"

    async def test_undecided_status_stays_sent(self, db, configured_tenant, fake):
        document_id, client = await self._sent_document(db, configured_tenant, fake)
        fake.routes[("GET", "/status/document/T-9")] = httpx.Response(200, json={"data": {"status": "processing"}})

        document = await service.reconcile_document(db, document_id, client=client)
        assert document.status == DocumentStatus.SENT.value

    async def test_only_sent_documents(self, db, configured_tenant, fake):
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        with pytest.raises(HTTPException) as exc:
            await service.reconcile_document(db, document.id, client=client)
        assert exc.value.status_code == 400

    async def test_reconcile_batch(self, db, configured_tenant, fake):
        await self._sent_document(db, configured_tenant, fake, track_id="T-1", order_number="ORD-1")
        await self._sent_document(db, configured_tenant, fake, track_id="T-2", order_number="ORD-2")
        fake.routes[("GET", "/status/document/T-1")] = httpx.Response(200, json={"data": {"is_valid": True, "cufe": "C1"}})
        fake.routes[("GET", "/status/document/T-2")] = httpx.Response(200, json={"data": {"status": "rechazado"}})

        summary = await service.reconcile_sent_documents(db, client_factory=client_factory(fake))
        assert (summary.processed, summary.succeeded, summary.failed) == (2, 1, 1)


# ===== TASA DE RECHAZO =====

class TestRejectRate:
    async def _finished(self, db, tenant_id, accepted: int, failed: int):
        for index in range(accepted + failed):
            db.add(QueuedDocument(
                tenant_id=tenant_id,
                kind=DocumentKind.POS.value,
                source_type=SourceType.SALE.value,
                source_id=f"sale-{index}",
                prefix="SETP",
                document_number=index + 1,
                status=DocumentStatus.ACCEPTED.value if index < accepted else DocumentStatus.FAILED.value,
            ))
        await db.commit()

    async def test_high_reject_rate_alert(self, db, tenant_id):
        await self._finished(db, tenant_id, accepted=8, failed=2)
        assert await service.check_reject_rate(db, tenant_id) is True

        alerts = (await db.execute(select(EbillingAlert))).scalars().all()
        assert [a.type for a in alerts] == [AlertType.HIGH_REJECT_RATE.value]

    async def test_small_sample_ignored(self, db, tenant_id):
        await self._finished(db, tenant_id, accepted=4, failed=5)
        assert await service.check_reject_rate(db, tenant_id) is False

    async def test_low_rate_ignored(self, db, tenant_id):
        await self._finished(db, tenant_id, accepted=19, failed=1)
        assert await service.check_reject_rate(db, tenant_id) is False


# ===== CONSULTA =====

class TestListAndStats:
    async def test_search_and_filters(self, db, configured_tenant, fake):
        accepted = await accepted_document(db, configured_tenant, fake, order_number="ORD-1")
        factory = client_factory(fake)
        await service.queue_document(db, sale_request(configured_tenant, "ORD-2"), factory)
        await service.queue_document(db, sale_request(configured_tenant, "ORD-3"), factory)

        documents, total = await service.list_documents(db, tenant_id=configured_tenant)
        assert total == 3
        assert len(documents) == 3

        documents, total = await service.list_documents(db, query="ord-2")
        assert total == 1
        assert documents[0].order_number == "ORD-2"

        documents, total = await service.list_documents(db, query="T-1")
        assert [d.id for d in documents] == [accepted.id]

        _, total = await service.list_documents(db, doc_status=DocumentStatus.PENDING)
        assert total == 2

        documents, total = await service.list_documents(db, tenant_id=configured_tenant, limit=2, offset=10)
        assert documents == []
        assert total == 3

    async def test_stats(self, db, configured_tenant, fake):
        await accepted_document(db, configured_tenant, fake, order_number="ORD-1")
        fake.routes[("POST", "/invoice")] = httpx.Response(422, json={"message": "Rechazado"})
        document = await service.queue_document(db, sale_request(configured_tenant, "ORD-2"), client_factory(fake))
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        await service.submit_document(db, document.id, client=client)

        stats = await service.get_document_stats(db, configured_tenant)
        assert stats.total == 2
        assert stats.by_status == {"ACCEPTED": 1, "FAILED": 1}
        assert stats.by_kind == {"POS": 2}
        assert stats.reject_rate == 50.0


# ===== DESCARGAS =====

class TestDownloads:
    async def test_pdf_cached_after_first_download(self, db, configured_tenant, fake):
        document = await accepted_document(db, configured_tenant, fake)
        fake.routes[("GET", "/documents/pdf/T-1")] = httpx.Response(
            200, content=b"%PDF-1.4 factura", headers={"content-type": "application/pdf"}
        )
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)

        content, mime_type = await service.download_document_pdf(db, document.id, client=client)
        again, _ = await service.download_document_pdf(db, document.id, client=client)

        assert content == again == b"%PDF-1.4 factura"
        assert mime_type == "application/pdf"
        assert fake.calls.count(("GET", "/documents/pdf/T-1")) == 1
        files = (await db.execute(select(DocumentFile))).scalars().all()
        assert len(files) == 1

    async def test_failed_download(self, db, configured_tenant, fake):
        document = await accepted_document(db, configured_tenant, fake)
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        with pytest.raises(HTTPException) as exc:
            await service.download_document_attached(db, document.id, client=client)
        assert exc.value.status_code == 502

    async def test_document_without_track(self, db, configured_tenant, fake):
        document = await service.queue_document(db, sale_request(configured_tenant), client_factory(fake))
        with pytest.raises(HTTPException) as exc:
            await service.download_document_pdf(db, document.id)
        assert exc.value.status_code == 400


# ===== ENDPOINTS =====

BASE = "/api/internal-admin/ebilling/documents"


class TestDocumentEndpoints:
    async def test_list_and_detail(self, client, db, configured_tenant, fake, billing_ops, support_agent, auth_headers):
        document = await accepted_document(db, configured_tenant, fake)
        fake.routes[("GET", "/documents/pdf/T-1")] = httpx.Response(
            200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"}
        )
        matias = await get_matias_client(db, configured_tenant, transport=fake.transport)
        await service.download_document_pdf(db, document.id, client=matias)

        response = await client.get(BASE, params={"tenant_id": str(configured_tenant)}, headers=auth_headers(billing_ops))
        assert response.status_code == 200
        assert response.json()["total"] == 1

        response = await client.get(f"{BASE}/{document.id}", headers=auth_headers(billing_ops))
        assert response.status_code == 403

        response = await client.get(f"{BASE}/{document.id}", headers=auth_headers(support_agent))
        body = response.json()
        assert body["status"] == "ACCEPTED"
        assert body["files"][0]["has_data"] is True
        assert "base64_data" not in body["files"][0]

        response = await client.get(f"{BASE}/{document.id}/pdf", headers=auth_headers(support_agent))
        assert response.status_code == 200
        assert response.content == b"%PDF-1.4"
        assert response.headers["content-type"] == "application/pdf"
        assert "attachment" in response.headers["content-disposition"]

    async def test_retry_and_stats_roles(self, client, db, configured_tenant, fake, support_agent, billing_ops, auth_headers):
        document = await accepted_document(db, configured_tenant, fake)

        response = await client.post(f"{BASE}/{document.id}/retry", headers=auth_headers(billing_ops))
        assert response.status_code == 403

        response = await client.post(f"{BASE}/{document.id}/retry", headers=auth_headers(support_agent))
        assert response.status_code == 400

        response = await client.get(f"{BASE}/stats", headers=auth_headers(support_agent))
        assert response.status_code == 403

        response = await client.get(f"{BASE}/stats", headers=auth_headers(billing_ops))
        assert response.status_code == 200
        assert response.json()["by_status"] == {"ACCEPTED": 1}
