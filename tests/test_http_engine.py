import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from tecrural_bot.services.diagnosis import (
    DiagnosisEngineError,
    DiagnosisOutcome,
    DiagnosisRequest,
    HttpDiagnosisEngine,
)
from tecrural_bot.services.diagnosis.http_engine import parse_engine_response


class TestParseEngineResponse:
    def test_needs_better_photo(self):
        result = parse_engine_response({"needsBetterPhoto": True, "message": "La foto está borrosa"})
        assert result.outcome == DiagnosisOutcome.NEEDS_BETTER_IMAGE
        assert result.message == "La foto está borrosa"

    @pytest.mark.parametrize(
        "status_code,category",
        [(402, "no_credits"), (404, "account_not_found"), (400, "invalid_request"), (500, "engine_error")],
    )
    def test_error_categories(self, status_code, category):
        result = parse_engine_response({"error": "No tienes créditos", "statusCode": status_code})
        assert result.outcome == DiagnosisOutcome.FAILURE
        assert result.error_category == category
        assert result.message == "No tienes créditos"

    def test_error_category_from_http_status(self):
        result = parse_engine_response({"error": "Perfil no encontrado"}, status_code=404)
        assert result.error_category == "account_not_found"

    def test_success(self):
        result = parse_engine_response(
            {
                "success": True,
                "diagnosis": {
                    "id": "d-1",
                    "ai_diagnosis_md": "## Roya del café",
                    "confidence_score": "0.92",
                    "image_url": "https://cdn.tecrural.app/d-1.jpg",
                },
                "remainingCredits": 7,
            }
        )
        assert result.outcome == DiagnosisOutcome.SUCCESS
        assert result.report_markdown == "## Roya del café"
        assert result.confidence == pytest.approx(0.92)
        assert result.remaining_credits == 7
        assert result.diagnosis_id == "d-1"

    def test_unknown_shape(self):
        with pytest.raises(DiagnosisEngineError):
            parse_engine_response({"status": "queued"})


def _request():
    return DiagnosisRequest(
        account_id=uuid.UUID("12345678-1234-5678-1234-567812345678"),
        crop_name="tomate",
        notes="manchas",
        image_bytes=b"\xff\xd8\xff\xe0",
        mime_type="image/png",
        channel="whatsapp",
    )


def _mock_client(mock_client_class, response=None, error=None):
    mock_client = MagicMock()
    mock_client.post = AsyncMock(return_value=response, side_effect=error)
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


class TestHttpDiagnosisEngine:
    @patch("tecrural_bot.services.diagnosis.http_engine.httpx.AsyncClient")
    def test_posts_multipart_with_token(self, mock_client_class):
        response = Mock()
        response.status_code = 200
        response.json.return_value = {"success": True, "diagnosis": {"ai_diagnosis_md": "ok"}, "remainingCredits": 1}
        mock_client = _mock_client(mock_client_class, response)

        engine = HttpDiagnosisEngine("https://engine.test/diagnose", token="secret", timeout_seconds=5)
        result = asyncio.run(engine.diagnose(_request()))

        assert result.outcome == DiagnosisOutcome.SUCCESS
        mock_client_class.assert_called_once_with(timeout=5)
        args, kwargs = mock_client.post.call_args
        assert args[0] == "https://engine.test/diagnose"
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}
        assert kwargs["data"]["cultivoName"] == "tomate"
        assert kwargs["data"]["source"] == "whatsapp_bot"
        assert kwargs["data"]["userId"] == "12345678-1234-5678-1234-567812345678"
        assert kwargs["files"]["image"] == ("diagnosis.png", b"\xff\xd8\xff\xe0", "image/png")

    @patch("tecrural_bot.services.diagnosis.http_engine.httpx.AsyncClient")
    def test_transport_error(self, mock_client_class):
        _mock_client(mock_client_class, error=httpx.ReadTimeout("timed out"))

        with pytest.raises(DiagnosisEngineError):
            asyncio.run(HttpDiagnosisEngine("https://engine.test").diagnose(_request()))

    @patch("tecrural_bot.services.diagnosis.http_engine.httpx.AsyncClient")
    def test_non_json_response(self, mock_client_class):
        response = Mock()
        response.status_code = 502
        response.json.side_effect = ValueError("not json")
        _mock_client(mock_client_class, response)

        with pytest.raises(DiagnosisEngineError):
            asyncio.run(HttpDiagnosisEngine("https://engine.test").diagnose(_request()))

    @patch("tecrural_bot.services.diagnosis.http_engine.httpx.AsyncClient")
    def test_error_payload_uses_http_status(self, mock_client_class):
        response = Mock()
        response.status_code = 402
        response.json.return_value = {"error": "Sin créditos"}
        _mock_client(mock_client_class, response)

        result = asyncio.run(HttpDiagnosisEngine("https://engine.test").diagnose(_request()))

        assert result.error_category == "no_credits"
