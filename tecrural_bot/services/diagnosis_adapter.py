from typing import Iterable, Optional
from uuid import UUID

from tecrural_bot.logging_config import get_logger, mask_id
from tecrural_bot.services import messages
from tecrural_bot.services.diagnosis import (
    DiagnosisEngine,
    DiagnosisOutcome,
    DiagnosisRequest,
    DiagnosisResult,
)

logger = get_logger("diagnosis_adapter")

_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


def normalize_mime_type(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    value = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(value, value)


def sniff_mime_type(data: bytes) -> Optional[str]:
    """Detect the image type from magic bytes when the provider gives none."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class DiagnosisAdapter:
    """Validate an assembled (crop, notes, image) bundle and hand it to the engine."""

    def __init__(self, engine: DiagnosisEngine, allowed_mime_types: Iterable[str], max_image_bytes: int):
        self.engine = engine
        self.allowed_mime_types = {normalize_mime_type(m) for m in allowed_mime_types}
        self.max_image_bytes = max_image_bytes

    def validate_image(self, image_bytes: bytes, mime_type: Optional[str]) -> Optional[str]:
        """Return a user-facing reason when the image cannot be diagnosed, None when it is fine."""
        if not image_bytes:
            return "La imagen llegó vacía."
        if len(image_bytes) > self.max_image_bytes:
            limit_mb = self.max_image_bytes // (1024 * 1024)
            return f"La imagen es demasiado grande (máximo {limit_mb} MB)."
        if mime_type not in self.allowed_mime_types:
            return "El formato de la imagen no es compatible. Envía una foto JPG, PNG o WEBP."
        return None

    async def invoke(
        self,
        account_id: UUID,
        crop_name: str,
        notes: str,
        image_bytes: bytes,
        mime_type: Optional[str],
        channel: str,
    ) -> DiagnosisResult:
        mime = normalize_mime_type(mime_type) or sniff_mime_type(image_bytes or b"")
        if mime == "application/octet-stream":
            mime = sniff_mime_type(image_bytes or b"") or mime

        reason = self.validate_image(image_bytes, mime)
        if reason:
            logger.info(
                "Image rejected before diagnosis",
                extra={
                    "context": {
                        "account_id": mask_id(account_id),
                        "mime_type": mime,
                        "size": len(image_bytes or b""),
                    }
                },
            )
            return DiagnosisResult.needs_better_image(reason)

        return await self.engine.diagnose(
            DiagnosisRequest(
                account_id=account_id,
                crop_name=crop_name,
                notes=notes,
                image_bytes=image_bytes,
                mime_type=mime,
                channel=channel,
            )
        )

    @staticmethod
    def reply_text(result: DiagnosisResult, crop_name: str) -> str:
        if result.outcome == DiagnosisOutcome.NEEDS_BETTER_IMAGE:
            return messages.format_needs_better_image(result.message)
        if result.outcome == DiagnosisOutcome.FAILURE:
            # Engine errors are already localized for end users.
            return result.message or messages.GENERIC_RETRY
        return messages.format_diagnosis_success(
            crop_name, result.confidence, result.report_markdown, result.remaining_credits
        )
