from __future__ import annotations

import base64
import binascii
import hashlib
import io
import logging
from collections import defaultdict
from typing import Sequence

from pypdf import PdfReader, PdfWriter
from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from signflow.core.config import settings
from signflow.core.errors import RenderFailure
from signflow.models.base import utcnow
from signflow.services.field_mapper import FieldInstance
from signflow.services.storage import StorageBackend, get_storage

logger = logging.getLogger("signflow.renderer")

QR_STAMP_SIZE = 64


def verification_payload(reference: str, document_sha256: str) -> str:
    """Text encoded in the verification QR code: the public verify link plus the source hash."""
    return f"{settings.resolved_public_app_url()}/verify/{reference}?sha256={document_sha256}"


def decode_image_payload(payload: str) -> bytes:
    raw = (payload or "").strip()
    if not raw:
        raise ValueError("Empty signature image")
    if raw.startswith("data:"):
        header, _, raw = raw.partition(",")
        if ";base64" not in header:
            raise ValueError("Signature image must be base64 encoded")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid signature image payload") from exc


class DocumentRenderer:
    """
    Overlays mapped field values onto the source PDF and produces a new artifact.
    Any failure aborts the whole render with RenderFailure.
    """

    def __init__(
        self,
        storage: StorageBackend | None = None,
        *,
        header: str | None = None,
        verification_qr: bool | None = None,
    ) -> None:
        self.storage = storage or get_storage()
        self.header = header if header is not None else settings.render_header
        self.verification_qr = settings.render_verification_qr if verification_qr is None else verification_qr

    def render(self, source_bytes: bytes, instances: Sequence[FieldInstance], *, reference: str) -> bytes:
        try:
            reader = PdfReader(io.BytesIO(source_bytes))
            writer = PdfWriter()

            by_page: dict[int, list[FieldInstance]] = defaultdict(list)
            for instance in instances:
                by_page[instance.page].append(instance)

            generated_at = utcnow()
            qr_payload = None
            if self.verification_qr:
                qr_payload = verification_payload(reference, hashlib.sha256(source_bytes).hexdigest())
            for page_index, page in enumerate(reader.pages, start=1):
                width = float(page.mediabox.width)
                height = float(page.mediabox.height)
                overlay_stream = io.BytesIO()
                c = canvas.Canvas(overlay_stream, pagesize=(width, height))

                if self.header:
                    c.setFont("Helvetica-Bold", 9)
                    c.setFillColor(colors.HexColor("#4b5563"))
                    c.drawString(40, height - 30, self.header)

                c.setFont("Helvetica", 7)
                c.setFillColor(colors.HexColor("#6b7280"))
                c.drawString(40, 20, f"Ref: {reference} | Generated {generated_at:%Y-%m-%d %H:%M} UTC")

                if qr_payload:
                    self._draw_verification_stamp(c, page_width=width, payload=qr_payload)

                for instance in by_page.get(page_index, []):
                    self._draw_field(c, page_width=width, page_height=height, instance=instance)

                c.save()
                overlay_stream.seek(0)
                overlay_reader = PdfReader(overlay_stream)
                page.merge_page(overlay_reader.pages[0])
                writer.add_page(page)

            output = io.BytesIO()
            writer.write(output)
            return output.getvalue()
        except Exception as exc:
            logger.warning("Render of %s failed: %s", reference, exc)
            raise RenderFailure(f"Failed to render signed document: {exc}") from exc

    def render_and_store(
        self,
        *,
        source_ref: str,
        instances: Sequence[FieldInstance],
        reference: str,
    ) -> str:
        try:
            source_bytes = self.storage.load_bytes(source_ref)
        except Exception as exc:
            raise RenderFailure(f"Failed to fetch source document {source_ref!r}: {exc}") from exc

        final_pdf = self.render(source_bytes, instances, reference=reference)
        final_sha256 = hashlib.sha256(final_pdf).hexdigest()
        try:
            return self.storage.save_bytes(
                root=f"signed/{reference}",
                name=f"final-{final_sha256}.pdf",
                data=final_pdf,
            )
        except Exception as exc:
            raise RenderFailure(f"Failed to store signed document: {exc}") from exc

    def _draw_verification_stamp(self, overlay: canvas.Canvas, *, page_width: float, payload: str) -> None:
        widget = QrCodeWidget(payload, barLevel="M")
        x0, y0, x1, y1 = widget.getBounds()
        drawing = Drawing(
            QR_STAMP_SIZE,
            QR_STAMP_SIZE,
            transform=[QR_STAMP_SIZE / (x1 - x0), 0, 0, QR_STAMP_SIZE / (y1 - y0), 0, 0],
        )
        drawing.add(widget)
        x = page_width - QR_STAMP_SIZE - 20
        renderPDF.draw(drawing, overlay, x, 28)
        overlay.setFont("Helvetica", 6)
        overlay.setFillColor(colors.HexColor("#6b7280"))
        overlay.drawCentredString(x + QR_STAMP_SIZE / 2, 20, "Scan to verify")

    def _draw_field(
        self,
        overlay: canvas.Canvas,
        *,
        page_width: float,
        page_height: float,
        instance: FieldInstance,
    ) -> None:
        width = max(instance.width, 0.01) * page_width
        height = max(instance.height, 0.01) * page_height
        x = max(instance.x, 0.0) * page_width
        x = min(max(0.0, x), max(0.0, page_width - width))
        y = page_height - instance.y * page_height - height
        y = min(max(0.0, y), max(0.0, page_height - height))

        if instance.is_image:
            image_bytes = decode_image_payload(instance.value)
            reader = ImageReader(io.BytesIO(image_bytes))
            overlay.drawImage(reader, x, y, width=width, height=height, preserveAspectRatio=True, mask="auto")
            return

        text = instance.value.strip()
        if not text:
            return
        font_name = "Helvetica"
        font_size = max(8, min(14, height * 0.6))
        text_width = pdfmetrics.stringWidth(text, font_name, font_size)
        while text_width > width and font_size > 6:
            font_size -= 1
            text_width = pdfmetrics.stringWidth(text, font_name, font_size)
        overlay.setFont(font_name, font_size)
        overlay.setFillColor(colors.HexColor("#111827"))
        overlay.drawString(x + 2, y + (height - font_size) / 2, text)
