"""
Pydantic schemas for the voice-answer API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class CreateQuestionRequest(BaseModel):
    text: Optional[str] = None


class Question(BaseModel):
    id: int
    text: str
    answered: bool


class VoiceResponse(BaseModel):
    id: int
    questionId: int
    audioUrl: str
    createdAt: datetime


class VoiceResponseSummary(BaseModel):
    audioUrl: str
    createdAt: datetime


class QuestionEnvelope(BaseModel):
    message: Literal["success"] = "success"
    data: Question


class QuestionListEnvelope(BaseModel):
    message: Literal["success"] = "success"
    data: list[Question]


class ResponseEnvelope(BaseModel):
    message: Literal["success"] = "success"
    data: VoiceResponse


class ResponseSummaryListEnvelope(BaseModel):
    message: Literal["success"] = "success"
    data: list[VoiceResponseSummary]


class CheckIpResponse(BaseModel):
    allowed: bool
    clientIp: str


class ErrorResponse(BaseModel):
    error: str
