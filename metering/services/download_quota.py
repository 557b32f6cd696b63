"""
Download Quota Service - Per-artifact download counters.

NO DICTIONARIES - All operations use strongly typed domain models.

Every generated artifact gets its own counter; quotas are never shared or
inherited between artifacts.
"""

from uuid import uuid4

from sqlalchemy import Update, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.config import settings
from metering.db.models import DownloadQuota
from metering.exceptions import DuplicateArtifactError
from metering.models.api import DenialReason
from metering.models.domain import DownloadDecision, DownloadQuotaData
from metering.observability.logging import get_logger
from metering.observability.metrics import metrics
from metering.services.period import as_utc, utc_now

logger = get_logger(__name__)


def download_decrement_statement(artifact_id: str, owner_id: str) -> Update:
    """Take one download when the requester owns the artifact and one remains."""
    return (
        update(DownloadQuota)
        .where(
            DownloadQuota.artifact_id == artifact_id,
            DownloadQuota.owner_id == owner_id,
            DownloadQuota.downloads_remaining > 0,
        )
        .values(
            downloads_remaining=DownloadQuota.downloads_remaining - 1,
            updated_at=utc_now(),
        )
        .returning(DownloadQuota.downloads_remaining)
    )


class DownloadQuotaService:
    """Creates and consumes artifact download quotas."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_quota(
        self, artifact_id: str, owner_id: str, initial: int | None = None
    ) -> DownloadQuotaData:
        """
        Attach a fresh quota to a newly generated artifact.

        Raises:
            DuplicateArtifactError: the artifact already has a quota
        """
        initial = settings.default_download_quota if initial is None else initial
        if initial < 0:
            raise ValueError(f"Initial downloads cannot be negative: {initial}")

        quota = DownloadQuota(
            id=uuid4(),
            artifact_id=artifact_id,
            owner_id=owner_id,
            downloads_remaining=initial,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        self.session.add(quota)

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning("download_quota_duplicate", artifact_id=artifact_id)
            raise DuplicateArtifactError(artifact_id) from e

        await self.session.commit()

        logger.info(
            "download_quota_created",
            artifact_id=artifact_id,
            owner_id=owner_id,
            downloads_remaining=initial,
        )
        return self._quota_to_domain(quota)

    async def consume_download(self, artifact_id: str, requester_id: str) -> DownloadDecision:
        """
        Take one download from the artifact's quota.

        A missing artifact and one owned by someone else both read as
        ArtifactNotFound so existence is not leaked.
        """
        result = await self.session.execute(
            download_decrement_statement(artifact_id, requester_id)
        )
        remaining = result.scalar_one_or_none()
        await self.session.commit()

        if remaining is not None:
            decision = DownloadDecision(allowed=True, remaining=remaining)
            logger.info(
                "download_consumed",
                artifact_id=artifact_id,
                owner_id=requester_id,
                downloads_remaining=remaining,
            )
        else:
            quota = await self._find_quota(artifact_id)
            if quota is None or quota.owner_id != requester_id:
                decision = DownloadDecision(
                    allowed=False, reason=DenialReason.ARTIFACT_NOT_FOUND
                )
                logger.warning(
                    "download_artifact_not_found",
                    artifact_id=artifact_id,
                    requester_id=requester_id,
                )
            else:
                decision = DownloadDecision(
                    allowed=False, reason=DenialReason.DOWNLOAD_LIMIT_REACHED, remaining=0
                )
                logger.info(
                    "download_limit_reached", artifact_id=artifact_id, owner_id=requester_id
                )

        metrics.record_download(
            decision.allowed, decision.reason.value if decision.reason else None
        )
        return decision

    async def get_status(self, artifact_id: str, owner_id: str) -> DownloadQuotaData | None:
        """Quota of an artifact as seen by its owner; None for anyone else."""
        quota = await self._find_quota(artifact_id)
        if quota is None or quota.owner_id != owner_id:
            return None
        return self._quota_to_domain(quota)

    async def _find_quota(self, artifact_id: str) -> DownloadQuota | None:
        stmt = (
            select(DownloadQuota)
            .where(DownloadQuota.artifact_id == artifact_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _quota_to_domain(self, quota: DownloadQuota) -> DownloadQuotaData:
        """Convert ORM quota to domain model."""
        return DownloadQuotaData(
            artifact_id=quota.artifact_id,
            owner_id=quota.owner_id,
            downloads_remaining=quota.downloads_remaining,
            created_at=as_utc(quota.created_at) or utc_now(),
        )
