"""
Voice-response submission: stage the upload, push it to object storage, then
record it against its question.

Storage always resolves before the database transaction starts, so a response
row never points at an object that was not stored. The reverse can happen: if
the transaction fails after a successful upload, the object is left behind
(an orphan) and only logged.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol
from uuid import uuid4

from fastapi.concurrency import run_in_threadpool

from voiceqa.db import DbClient, ResponseRecord
from voiceqa.errors import (
    AlreadyAnswered,
    InvalidInput,
    MissingField,
    MissingFile,
    PersistenceFailure,
)
from voiceqa.storage import StorageClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class AudioUpload(Protocol):
    """The parts of ``fastapi.UploadFile`` the orchestrator relies on."""

    filename: Optional[str]

    @property
    def content_type(self) -> Optional[str]:
        ...

    async def read(self, size: int = -1) -> bytes:
        ...


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to delete staged upload %s: %s", path, exc)


@asynccontextmanager
async def stage_upload(
    upload: AudioUpload, directory: Optional[str] = None
) -> AsyncIterator[str]:
    """
    Copy the upload to a temporary file and yield its path.

    The file is removed when the block exits, whatever the outcome.
    """
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd, path = tempfile.mkstemp(prefix="response-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as handle:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                await run_in_threadpool(handle.write, chunk)
        yield path
    finally:
        _remove_quietly(path)


def build_storage_key(question_id: int, filename: Optional[str]) -> str:
    name = os.path.basename((filename or "").replace("\\", "/")) or "audio"
    token = f"{int(time.time() * 1000)}-{uuid4().hex[:8]}"
    return f"responses/{question_id}/{token}-{name}"


def parse_question_id(raw: Optional[str]) -> int:
    if raw is None or not str(raw).strip():
        raise MissingField("questionId is required")
    try:
        return int(str(raw).strip())
    except ValueError:
        raise InvalidInput("questionId must be an integer") from None


async def submit_response(
    question_id: int,
    upload: Optional[AudioUpload],
    *,
    db: DbClient,
    storage: StorageClient,
    upload_dir: Optional[str] = None,
    allow_reanswer: bool = True,
) -> ResponseRecord:
    if upload is None or not upload.filename:
        raise MissingFile("audio file is required")

    key = build_storage_key(question_id, upload.filename)
    content_type = upload.content_type or DEFAULT_CONTENT_TYPE

    async with stage_upload(upload, upload_dir) as staged_path:
        audio_url = await run_in_threadpool(
            storage.put_file, staged_path, key, content_type
        )
    logger.info("Uploaded response for question %s to %s", question_id, key)

    try:
        return await run_in_threadpool(
            db.record_response, question_id, audio_url, allow_reanswer=allow_reanswer
        )
    except (PersistenceFailure, AlreadyAnswered):
        logger.warning(
            "Response for question %s not recorded; orphaned object %s",
            question_id,
            key,
        )
        raise
