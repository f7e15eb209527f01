from typing import Optional

import httpx

from tecrural_bot.logging_config import get_logger, mask_id
from tecrural_bot.services.diagnosis.base import (
    DiagnosisEngine,
    DiagnosisEngineError,
    DiagnosisRequest,
    DiagnosisResult,
)

logger = get_logger("diagnosis.http")

_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}

_ERROR_CATEGORIES = {
    402: "no_credits",
    404: "account_not_found",
    400: "invalid_request",
}


def _error_category(status_code: Optional[int]) -> str:
    return _ERROR_CATEGORIES.get(status_code or 0, "engine_error")


def parse_engine_response(data: dict, status_code: Optional[int] = None) -> DiagnosisResult:
    """Map the engine's JSON answer to a DiagnosisResult.

    Shapes:
        {"needsBetterPhoto": true, "message": "..."}
        {"error": "...", "statusCode": 402}
        {"success": true, "diagnosis": {...}, "remainingCredits": 4}
    """
    if data.get("needsBetterPhoto"):
        return DiagnosisResult.needs_better_image(data.get("message"))

    if data.get("error"):
        return DiagnosisResult.failure(
            str(data["error"]),
            _error_category(data.get("statusCode") or status_code),
        )

    diagnosis = data.get("diagnosis")
    if data.get("success") and isinstance(diagnosis, dict):
        confidence = diagnosis.get("confidence_score")
        return DiagnosisResult.success(
            report_markdown=diagnosis.get("ai_diagnosis_md") or "",
            confidence=float(confidence) if confidence is not None else None,
            remaining_credits=data.get("remainingCredits"),
            image_url=diagnosis.get("image_url"),
            diagnosis_id=str(diagnosis["id"]) if diagnosis.get("id") else None,
        )

    raise DiagnosisEngineError(f"Unexpected engine response keys: {sorted(data.keys())}")


class HttpDiagnosisEngine(DiagnosisEngine):
    """Diagnosis engine exposed over HTTP (multipart upload, JSON answer)."""

    def __init__(self, url: str, token: Optional[str] = None, timeout_seconds: float = 120.0):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds

    async def diagnose(self, request: DiagnosisRequest) -> DiagnosisResult:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        extension = _EXTENSIONS.get(request.mime_type, "jpg")
        files = {"image": (f"diagnosis.{extension}", request.image_bytes, request.mime_type)}
        data = {
            "userId": str(request.account_id),
            "cultivoName": request.crop_name,
            "notes": request.notes,
            "source": f"{request.channel}_bot",
        }

        logger.info(
            "Calling diagnosis engine",
            extra={
                "context": {
                    "account_id": mask_id(request.account_id),
                    "channel": request.channel,
                    "image_bytes": len(request.image_bytes),
                }
            },
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, headers=headers, data=data, files=files)
        except httpx.HTTPError as e:
            raise DiagnosisEngineError(f"Diagnosis engine request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise DiagnosisEngineError(f"Diagnosis engine returned non-JSON ({response.status_code})") from e

        if not isinstance(payload, dict):
            raise DiagnosisEngineError(f"Diagnosis engine returned {type(payload).__name__}")

        result = parse_engine_response(payload, response.status_code)
        logger.info(
            "Diagnosis engine answered",
            extra={"context": {"status_code": response.status_code, "outcome": result.outcome.value}},
        )
        return result
