from __future__ import annotations

import hashlib
import io
from datetime import datetime, timedelta
from html import escape
from typing import Protocol, Sequence
from uuid import UUID

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import and_, or_, update
from sqlmodel import Session, select

from app.core.config import settings
from app.core.logging_setup import get_logger
from app.models.audit import AuditLog
from app.models.base import utcnow
from app.models.workflow import ArtifactStatus, Signer, SigningRequest, SigningRequestStatus
from app.services.audit import AuditService
from app.services.storage import StorageBackend, get_storage

logger = get_logger("artifact")

RETRYABLE_ARTIFACT_STATUSES = (ArtifactStatus.PENDING, ArtifactStatus.FAILED)


class ArtifactGenerator(Protocol):
    def generate(self, request: SigningRequest, signers: Sequence[Signer], events: Sequence[AuditLog]) -> bytes:
        ...


class CompletionCertificateGenerator:
    """Renders the completion certificate of a signed request as a PDF."""

    def generate(self, request: SigningRequest, signers: Sequence[Signer], events: Sequence[AuditLog]) -> bytes:
        buffer = io.BytesIO()
        generated_at = utcnow()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=LETTER,
            leftMargin=0.8 * inch,
            rightMargin=0.8 * inch,
            topMargin=1 * inch,
            bottomMargin=0.75 * inch,
        )
        doc.title = f"Completion certificate {request.title}"

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "CertificateTitle",
            parent=styles["Heading1"],
            alignment=1,
            fontSize=16,
            leading=19,
            textColor=colors.HexColor("#11284b"),
            spaceAfter=4,
        )
        section_style = ParagraphStyle(
            "SectionHeading",
            parent=styles["Heading2"],
            fontSize=12,
            leading=14,
            textColor=colors.HexColor("#0f5298"),
            spaceBefore=14,
            spaceAfter=6,
        )
        body_style = ParagraphStyle(
            "CertificateBody",
            parent=styles["BodyText"],
            fontSize=9,
            leading=12,
        )

        def fmt_datetime(value: datetime | None) -> str:
            if not value:
                return "-"
            return value.strftime("%Y-%m-%d %H:%M:%S UTC")

        def cell(value: object | None) -> Paragraph:
            text = "-" if value in (None, "") else str(getattr(value, "value", value))
            return Paragraph(escape(text), body_style)

        def styled(table: Table) -> Table:
            table.setStyle(
                TableStyle(
                    [
                        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#dce4f2")),
                        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f7f9fc")]),
                        ("VALIGN", (0, 0), (-1, -1), "TOP"),
                        ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#c8d1e4")),
                    ]
                )
            )
            return table

        story: list = [
            Paragraph("Completion certificate", title_style),
            Paragraph(escape(request.title), body_style),
            Spacer(1, 12),
        ]
        metadata = [
            ("Request ID", request.id),
            ("Owner", request.owner_email),
            ("Signing mode", request.signing_mode),
            ("Sent at", fmt_datetime(request.sent_at)),
            ("Completed at", fmt_datetime(request.completed_at)),
            ("Generated at", fmt_datetime(generated_at)),
        ]
        story.append(
            styled(
                Table(
                    [[cell("Field"), cell("Value")]] + [[cell(label), cell(value)] for label, value in metadata],
                    colWidths=[doc.width * 0.3, doc.width * 0.7],
                    hAlign="LEFT",
                )
            )
        )

        story.append(Paragraph("Signers", section_style))
        rows = [[cell("#"), cell("Signer"), cell("Signed at"), cell("Verification"), cell("IP address")]]
        for signer in signers:
            rows.append(
                [
                    cell(signer.signing_order),
                    cell(f"{signer.full_name} <{signer.email}>"),
                    cell(fmt_datetime(signer.signed_at)),
                    cell(signer.second_factor_method),
                    cell(signer.ip_address),
                ]
            )
        story.append(
            styled(
                Table(
                    rows,
                    colWidths=[doc.width * w for w in (0.06, 0.4, 0.22, 0.16, 0.16)],
                    hAlign="LEFT",
                    repeatRows=1,
                )
            )
        )

        story.append(Paragraph("Audit trail", section_style))
        trail = [[cell("When"), cell("Event"), cell("Actor")]]
        for event in events:
            trail.append([cell(fmt_datetime(event.created_at)), cell(event.event_type), cell(event.actor_email)])
        story.append(
            styled(Table(trail, colWidths=[doc.width * w for w in (0.3, 0.35, 0.35)], hAlign="LEFT", repeatRows=1))
        )

        doc.build(story)
        buffer.seek(0)
        return buffer.getvalue()


class CompletionArtifactService:
    """Produces the final artifact of a completed request at most once.

    The ``pending``/``failed`` to ``generating`` move is a conditional UPDATE, so
    two workers racing on the same request cannot both run the generator. A
    ``generating`` claim older than the lease belongs to a worker that died and
    may be taken over.
    """

    def __init__(
        self,
        session: Session,
        generator: ArtifactGenerator | None = None,
        storage: StorageBackend | None = None,
        audit_service: AuditService | None = None,
        max_attempts: int | None = None,
        claim_lease: timedelta | None = None,
    ) -> None:
        self.session = session
        self.generator = generator or CompletionCertificateGenerator()
        self.storage = storage
        self.audit_service = audit_service or AuditService(session)
        self.max_attempts = settings.artifact_max_attempts if max_attempts is None else max_attempts
        self.claim_lease = claim_lease or timedelta(seconds=settings.artifact_claim_lease_seconds)

    def _claimable(self, now: datetime):
        stale = now - self.claim_lease
        return or_(
            SigningRequest.artifact_status.in_(RETRYABLE_ARTIFACT_STATUSES),
            and_(
                SigningRequest.artifact_status == ArtifactStatus.GENERATING,
                or_(SigningRequest.artifact_claimed_at.is_(None), SigningRequest.artifact_claimed_at <= stale),
            ),
        )

    def _claim(self, request_id: UUID, now: datetime) -> bool:
        outcome = self.session.execute(
            update(SigningRequest)
            .where(SigningRequest.id == request_id)
            .where(SigningRequest.status == SigningRequestStatus.COMPLETED)
            .where(self._claimable(now))
            .where(SigningRequest.artifact_attempts < self.max_attempts)
            .values(
                artifact_status=ArtifactStatus.GENERATING,
                artifact_claimed_at=now,
                artifact_attempts=SigningRequest.artifact_attempts + 1,
            ),
            execution_options={"synchronize_session": False},
        )
        self.session.commit()
        return outcome.rowcount == 1

    def generate(self, request_id: UUID, now: datetime | None = None) -> SigningRequest | None:
        """Run the generator for a completed request; ``None`` if someone else owns it."""
        now = now or utcnow()
        if not self._claim(request_id, now):
            return None

        request = self.session.get(SigningRequest, request_id, populate_existing=True)
        signers = self.session.exec(
            select(Signer).where(Signer.request_id == request_id).order_by(Signer.signing_order)
        ).all()
        events = self.session.exec(
            select(AuditLog).where(AuditLog.request_id == request_id).order_by(AuditLog.created_at)
        ).all()

        try:
            data = self.generator.generate(request, signers, events)
            storage = self.storage or get_storage()
            path = storage.save_bytes(root=f"certificates/{request.id}", name="completion-certificate.pdf", data=data)
        except Exception as exc:
            logger.exception("Artifact generation failed for request %s", request_id)
            request.artifact_status = ArtifactStatus.FAILED
            request.updated_at = now
            self.session.add(request)
            self.audit_service.record_event(
                event_type="artifact_generation_failed",
                request_id=request.id,
                details={"attempt": request.artifact_attempts, "error": str(exc)},
                commit=False,
                created_at=now,
            )
            self.session.commit()
            return request

        request.artifact_status = ArtifactStatus.GENERATED
        request.artifact_path = path
        request.updated_at = now
        self.session.add(request)
        self.audit_service.record_event(
            event_type="artifact_generated",
            request_id=request.id,
            details={"path": path, "sha256": hashlib.sha256(data).hexdigest(), "attempt": request.artifact_attempts},
            commit=False,
            created_at=now,
        )
        self.session.commit()
        self.session.refresh(request)
        logger.info("Completion artifact stored for request %s at %s", request.id, path)
        return request

    def due_retries(self, now: datetime | None = None, limit: int = 100) -> list[UUID]:
        now = now or utcnow()
        return list(
            self.session.exec(
                select(SigningRequest.id)
                .where(SigningRequest.status == SigningRequestStatus.COMPLETED)
                .where(self._claimable(now))
                .where(SigningRequest.artifact_attempts < self.max_attempts)
                .order_by(SigningRequest.completed_at)
                .limit(limit)
            ).all()
        )
