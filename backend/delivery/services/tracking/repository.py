"""
Courier location sample persistence.

Samples are append-only. LocationRepository works inside a caller-owned
session; SQLLocationStore opens a short session per write for long-running
publishers that do not hold one.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery.core.exceptions import StoreUnavailable
from delivery.core.logging import get_logger
from delivery.database.models.location import CourierLocation
from delivery.services.tracking.events import LocationSampled

logger = get_logger(__name__)


class LocationRepository:
    """Repository for courier location samples."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append_sample(
        self,
        courier_id: uuid.UUID,
        latitude: float,
        longitude: float,
        sampled_at: datetime,
        order_id: Optional[uuid.UUID] = None,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> CourierLocation:
        """
        Append a location sample.

        Raises:
            StoreUnavailable: If the insert fails
        """
        try:
            sample = CourierLocation(
                courier_id=courier_id,
                order_id=order_id,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                heading=heading,
                speed=speed,
                sampled_at=sampled_at,
            )
            self.session.add(sample)
            await self.session.flush()
            return sample

        except SQLAlchemyError as e:
            logger.error(
                "Failed to append location sample",
                courier_id=str(courier_id),
                error=str(e),
            )
            raise StoreUnavailable(
                "Failed to append location sample",
                courier_id=str(courier_id),
                error=str(e),
            ) from e

    async def latest_sample(self, courier_id: uuid.UUID) -> Optional[CourierLocation]:
        """Current location of a courier: the most recent sample."""
        samples = await self.recent_samples(courier_id, limit=1)
        return samples[0] if samples else None

    async def recent_samples(
        self,
        courier_id: uuid.UUID,
        limit: int = 10,
    ) -> Sequence[CourierLocation]:
        """
        Most recent samples for a courier, newest first.

        Raises:
            StoreUnavailable: If the query fails
        """
        try:
            result = await self.session.execute(
                select(CourierLocation)
                .where(CourierLocation.courier_id == courier_id)
                .order_by(CourierLocation.sampled_at.desc())
                .limit(limit)
            )
            return result.scalars().all()

        except SQLAlchemyError as e:
            raise StoreUnavailable(
                "Failed to fetch location samples",
                courier_id=str(courier_id),
                error=str(e),
            ) from e


class SQLLocationStore:
    """Location sink that commits each sample in its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, sample: LocationSampled) -> None:
        """
        Persist a published sample.

        Raises:
            StoreUnavailable: If the write fails
        """
        async with self.session_factory() as session:
            try:
                await LocationRepository(session).append_sample(
                    courier_id=sample.courier_id,
                    order_id=sample.order_id,
                    latitude=sample.latitude,
                    longitude=sample.longitude,
                    accuracy=sample.accuracy,
                    heading=sample.heading,
                    speed=sample.speed,
                    sampled_at=sample.sampled_at,
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreUnavailable(
                    "Failed to commit location sample",
                    courier_id=str(sample.courier_id),
                    error=str(e),
                ) from e
