from tecrural_bot.services.diagnosis.base import (
    DiagnosisEngine,
    DiagnosisEngineError,
    DiagnosisOutcome,
    DiagnosisRequest,
    DiagnosisResult,
)
from tecrural_bot.services.diagnosis.http_engine import HttpDiagnosisEngine

__all__ = [
    "DiagnosisEngine",
    "DiagnosisEngineError",
    "DiagnosisOutcome",
    "DiagnosisRequest",
    "DiagnosisResult",
    "HttpDiagnosisEngine",
]
