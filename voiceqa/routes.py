"""
HTTP routes for the voice-answer API.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from voiceqa.access import is_allowed, resolve_client_ip
from voiceqa.config import Settings
from voiceqa.db import DbClient
from voiceqa.dependencies import get_app_settings, get_db_client, get_storage_client
from voiceqa.schemas import (
    CheckIpResponse,
    CreateQuestionRequest,
    ErrorResponse,
    QuestionEnvelope,
    QuestionListEnvelope,
    ResponseEnvelope,
    ResponseSummaryListEnvelope,
)
from voiceqa.storage import StorageClient
from voiceqa.uploads import parse_question_id, submit_response

logger = logging.getLogger(__name__)

router = APIRouter(
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}
)
diagnostics_router = APIRouter()


@router.get("/questions", response_model=QuestionListEnvelope)
def list_questions(db: DbClient = Depends(get_db_client)):
    questions = db.list_questions()
    return {"message": "success", "data": [q.as_dict() for q in questions]}


@router.post("/questions", response_model=QuestionEnvelope)
def create_question(
    payload: CreateQuestionRequest, db: DbClient = Depends(get_db_client)
):
    question = db.create_question(payload.text)
    logger.info("Created question %s", question.id)
    return {"message": "success", "data": question.as_dict()}


@router.post("/responses", response_model=ResponseEnvelope)
async def create_response(
    questionId: Optional[str] = Form(None),
    audio: Optional[UploadFile] = File(None),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_app_settings),
):
    """
    Store an audio answer and mark its question answered.
    """
    question_id = parse_question_id(questionId)
    record = await submit_response(
        question_id,
        audio,
        db=db,
        storage=storage,
        upload_dir=settings.upload_dir,
        allow_reanswer=settings.allow_reanswer,
    )
    return {"message": "success", "data": record.as_dict()}


@router.get("/responses/{question_id}", response_model=ResponseSummaryListEnvelope)
def list_responses(question_id: int, db: DbClient = Depends(get_db_client)):
    rows = db.list_responses(question_id)
    return {
        "message": "success",
        "data": [
            {"audioUrl": audio_url, "createdAt": created_at}
            for audio_url, created_at in rows
        ],
    }


@diagnostics_router.get("/check-ip", response_model=CheckIpResponse)
def check_ip(request: Request, settings: Settings = Depends(get_app_settings)):
    client_ip = resolve_client_ip(request)
    allowed = is_allowed(client_ip, settings.allowed_ip_list)
    return CheckIpResponse(allowed=allowed, clientIp=client_ip)
