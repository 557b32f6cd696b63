"""
Tests for DownloadQuotaService.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from metering.db.models import DownloadQuota
from metering.exceptions import DuplicateArtifactError
from metering.models.api import DenialReason
from metering.services.download_quota import DownloadQuotaService, download_decrement_statement


def seed_quota(conn, artifact_id: str, owner_id: str = "owner-1", remaining: int = 10) -> None:
    now = datetime.now(UTC)
    conn.execute(
        insert(DownloadQuota).values(
            artifact_id=artifact_id,
            owner_id=owner_id,
            downloads_remaining=remaining,
            created_at=now,
            updated_at=now,
        )
    )


def remaining_of(conn, artifact_id: str) -> int:
    return conn.execute(
        select(DownloadQuota.downloads_remaining).where(DownloadQuota.artifact_id == artifact_id)
    ).scalar_one()


def create_mock_quota(
    artifact_id: str = "art-1", owner_id: str = "owner-1", remaining: int = 10
) -> MagicMock:
    quota = MagicMock(spec=DownloadQuota)
    quota.artifact_id = artifact_id
    quota.owner_id = owner_id
    quota.downloads_remaining = remaining
    quota.created_at = datetime.now(UTC)
    return quota


class TestDownloadDecrementStatement:
    """Tests for the conditional download decrement (SQLite)."""

    def test_ten_downloads_then_limit(self, sqlite_engine):
        with sqlite_engine.begin() as conn:
            seed_quota(conn, "art-1")

        outcomes = []
        for _ in range(11):
            with sqlite_engine.begin() as conn:
                outcomes.append(
                    conn.execute(download_decrement_statement("art-1", "owner-1")).scalar_one_or_none()
                )

        assert outcomes[:10] == list(range(9, -1, -1))
        assert outcomes[10] is None

    def test_quotas_are_isolated_per_artifact(self, sqlite_engine):
        with sqlite_engine.begin() as conn:
            seed_quota(conn, "art-1", remaining=1)
            seed_quota(conn, "art-2", remaining=10)
            conn.execute(download_decrement_statement("art-1", "owner-1"))
            conn.execute(download_decrement_statement("art-1", "owner-1"))

            assert remaining_of(conn, "art-1") == 0
            assert remaining_of(conn, "art-2") == 10

    def test_other_owner_cannot_decrement(self, sqlite_engine):
        with sqlite_engine.begin() as conn:
            seed_quota(conn, "art-1", owner_id="owner-1")
            result = conn.execute(download_decrement_statement("art-1", "intruder"))

            assert result.first() is None
            assert remaining_of(conn, "art-1") == 10


class TestCreateQuota:
    """Tests for quota creation."""

    async def test_default_quota_is_ten(self, db_session: AsyncMock):
        service = DownloadQuotaService(db_session)

        quota = await service.create_quota("art-1", "owner-1")

        assert quota.downloads_remaining == 10
        assert quota.owner_id == "owner-1"
        db_session.add.assert_called_once()
        db_session.commit.assert_awaited_once()

    async def test_custom_initial_quota(self, db_session: AsyncMock):
        quota = await DownloadQuotaService(db_session).create_quota("art-1", "owner-1", 3)
        assert quota.downloads_remaining == 3

    async def test_negative_initial_quota_rejected(self, db_session: AsyncMock):
        with pytest.raises(ValueError):
            await DownloadQuotaService(db_session).create_quota("art-1", "owner-1", -1)

    async def test_duplicate_artifact_raises(self, db_session: AsyncMock):
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
        )

        with pytest.raises(DuplicateArtifactError) as exc_info:
            await DownloadQuotaService(db_session).create_quota("art-1", "owner-1")

        assert exc_info.value.artifact_id == "art-1"
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()


class TestConsumeDownload:
    """Tests for download consumption."""

    async def test_allowed_download_reports_remaining(self, db_session, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=9))

        decision = await DownloadQuotaService(db_session).consume_download("art-1", "owner-1")

        assert decision.allowed is True
        assert decision.remaining == 9

    async def test_exhausted_quota(self, db_session, result_factory):
        db_session.execute = AsyncMock(
            side_effect=[
                result_factory(scalar=None),
                result_factory(scalar=create_mock_quota(remaining=0)),
            ]
        )

        decision = await DownloadQuotaService(db_session).consume_download("art-1", "owner-1")

        assert decision.allowed is False
        assert decision.reason == DenialReason.DOWNLOAD_LIMIT_REACHED
        assert decision.remaining == 0

    async def test_unknown_artifact(self, db_session, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=None))

        decision = await DownloadQuotaService(db_session).consume_download("nope", "owner-1")

        assert decision.reason == DenialReason.ARTIFACT_NOT_FOUND

    async def test_foreign_artifact_reads_as_not_found(self, db_session, result_factory):
        db_session.execute = AsyncMock(
            side_effect=[
                result_factory(scalar=None),
                result_factory(scalar=create_mock_quota(owner_id="owner-1")),
            ]
        )

        decision = await DownloadQuotaService(db_session).consume_download("art-1", "intruder")

        assert decision.reason == DenialReason.ARTIFACT_NOT_FOUND


class TestGetStatus:
    """Tests for quota reads."""

    async def test_owner_sees_quota(self, db_session, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=create_mock_quota()))

        quota = await DownloadQuotaService(db_session).get_status("art-1", "owner-1")

        assert quota is not None
        assert quota.downloads_remaining == 10

    async def test_other_user_sees_nothing(self, db_session, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=create_mock_quota()))

        assert await DownloadQuotaService(db_session).get_status("art-1", "someone") is None
