"""
Tests for blob storage, note locks, configuration and token handling.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException

from careflow.core.auth import create_access_token, decode_token
from careflow.core.config import Settings
from careflow.core.errors import UnrecoverableInputError
from careflow.services.locks import NoteLockManager
from careflow.storage.blob import LocalBlobStore, build_blob_path, create_blob_store


class TestBlobStore:
    """Tests for LocalBlobStore."""

    def test_blob_path(self):
        assert build_blob_path("patient-1", "n1") == "patient-1/n1.webm"
        assert build_blob_path("patient-1", "n1", ".wav") == "patient-1/n1.wav"

    async def test_write_then_read(self, blob_store):
        await blob_store.write("patient-1/n1.webm", b"audio")
        assert await blob_store.read("patient-1/n1.webm") == b"audio"

    async def test_missing_blob_is_unrecoverable(self, blob_store):
        with pytest.raises(UnrecoverableInputError):
            await blob_store.read("patient-1/missing.webm")

    async def test_empty_blob_is_unrecoverable(self, blob_store):
        await blob_store.write("patient-1/empty.webm", b"")
        with pytest.raises(UnrecoverableInputError):
            await blob_store.read("patient-1/empty.webm")

    async def test_path_traversal_is_refused(self, blob_store):
        with pytest.raises(ValueError):
            await blob_store.write("../outside.webm", b"audio")

    def test_unknown_storage_type(self, tmp_path):
        assert isinstance(create_blob_store("local", str(tmp_path)), LocalBlobStore)
        with pytest.raises(ValueError):
            create_blob_store("s3", str(tmp_path))


class TestNoteLocks:
    """Tests for NoteLockManager."""

    async def test_second_holder_is_refused(self):
        locks = NoteLockManager()
        async with locks.hold("n1") as first:
            async with locks.hold("n1") as second:
                assert first is True
                assert second is False
            assert locks.is_locked("n1")
        assert not locks.is_locked("n1")

    async def test_different_notes_do_not_block(self):
        locks = NoteLockManager()
        async with locks.hold("n1") as first, locks.hold("n2") as second:
            assert first and second

    async def test_released_on_error(self):
        locks = NoteLockManager()
        with pytest.raises(RuntimeError):
            async with locks.hold("n1"):
                raise RuntimeError("stage crashed")

        async with locks.hold("n1") as acquired:
            assert acquired

    async def test_concurrent_holders(self):
        locks = NoteLockManager()
        acquired = []

        async def run():
            async with locks.hold("n1") as ok:
                acquired.append(ok)
                await asyncio.sleep(0.01)

        await asyncio.gather(run(), run(), run())
        assert sorted(acquired) == [False, False, True]


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.chat.top_k == 3
        assert settings.chat.similarity_threshold == 0.3
        assert settings.pipeline.transcription_max_attempts == 2
        assert "ary" in settings.pipeline.translation_languages
        assert settings.vector_store.backend == "memory"

    def test_nested_environment_override(self, monkeypatch):
        monkeypatch.setenv("CAREFLOW_CHAT__TOP_K", "5")
        monkeypatch.setenv("CAREFLOW_PIPELINE__MAX_CONCURRENT_NOTES", "8")
        monkeypatch.setenv("CAREFLOW_DATABASE__URL", "sqlite+aiosqlite:///./careflow.db")

        settings = Settings(_env_file=None)

        assert settings.chat.top_k == 5
        assert settings.pipeline.max_concurrent_notes == 8
        assert settings.database.async_url == "sqlite+aiosqlite:///./careflow.db"

    def test_postgres_url_from_parts(self):
        settings = Settings(_env_file=None)
        assert settings.database.async_url.startswith("postgresql+asyncpg://")


class TestTokens:
    """Tests for access tokens."""

    def test_round_trip(self):
        token = create_access_token("nurse-7", role="nurse")
        data = decode_token(token)

        assert data.user_id == "nurse-7"
        assert data.role == "nurse"

    def test_expired_token(self):
        token = create_access_token("nurse-7", expires_delta=timedelta(seconds=-5))
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)
        assert exc_info.value.status_code == 401

    def test_garbage_token(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token("not-a-jwt")
        assert exc_info.value.status_code == 401
