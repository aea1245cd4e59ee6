"""
Dependency wiring for the FastAPI app.

Clients are built once by ``create_app`` and kept on ``app.state``; route
handlers reach them through the getters below.
"""

from __future__ import annotations

import logging

from fastapi import Request

from voiceqa.config import Settings
from voiceqa.db import DbClient, InMemoryDbClient, SqlDbClient
from voiceqa.storage import InMemoryStorageClient, S3StorageClient, StorageClient

logger = logging.getLogger(__name__)


def build_db_client(settings: Settings) -> DbClient:
    if settings.use_in_memory_backends:
        return InMemoryDbClient()
    return SqlDbClient(settings.database_url)


def build_storage_client(settings: Settings) -> StorageClient:
    if settings.use_in_memory_backends:
        return InMemoryStorageClient()
    if not settings.s3_bucket:
        logger.warning("S3_BUCKET not set; audio is kept in memory only")
        return InMemoryStorageClient()
    return S3StorageClient(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        endpoint=settings.s3_endpoint,
        public_base_url=settings.s3_public_base_url,
    )


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db_client(request: Request) -> DbClient:
    return request.app.state.db


def get_storage_client(request: Request) -> StorageClient:
    return request.app.state.storage
