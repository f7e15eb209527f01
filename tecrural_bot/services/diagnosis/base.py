from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from uuid import UUID


class DiagnosisOutcome(str, Enum):
    NEEDS_BETTER_IMAGE = "needs_better_image"
    FAILURE = "failure"
    SUCCESS = "success"


class DiagnosisEngineError(Exception):
    """The engine could not be reached or answered with something unreadable."""


@dataclass
class DiagnosisRequest:
    account_id: UUID
    crop_name: str
    notes: str
    image_bytes: bytes
    mime_type: str
    channel: str


@dataclass
class DiagnosisResult:
    outcome: DiagnosisOutcome
    message: Optional[str] = None
    error_category: Optional[str] = None
    report_markdown: str = ""
    confidence: Optional[float] = None
    remaining_credits: Optional[int] = None
    image_url: Optional[str] = None
    diagnosis_id: Optional[str] = None

    @classmethod
    def needs_better_image(cls, reason: Optional[str] = None) -> "DiagnosisResult":
        return cls(outcome=DiagnosisOutcome.NEEDS_BETTER_IMAGE, message=reason)

    @classmethod
    def failure(cls, message: str, category: str = "engine_error") -> "DiagnosisResult":
        return cls(outcome=DiagnosisOutcome.FAILURE, message=message, error_category=category)

    @classmethod
    def success(
        cls,
        report_markdown: str,
        confidence: Optional[float],
        remaining_credits: Optional[int],
        image_url: Optional[str] = None,
        diagnosis_id: Optional[str] = None,
    ) -> "DiagnosisResult":
        return cls(
            outcome=DiagnosisOutcome.SUCCESS,
            report_markdown=report_markdown,
            confidence=confidence,
            remaining_credits=remaining_credits,
            image_url=image_url,
            diagnosis_id=diagnosis_id,
        )


class DiagnosisEngine(ABC):
    """Abstract base class for the crop diagnosis engine."""

    @abstractmethod
    async def diagnose(self, request: DiagnosisRequest) -> DiagnosisResult:
        """Run a diagnosis. Raises DiagnosisEngineError on transport failures."""
        pass
