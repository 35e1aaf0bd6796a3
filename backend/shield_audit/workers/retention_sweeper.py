"""Scheduled retention sweep job."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shield_audit.audit.retention import RetentionPolicyEngine, SweepReport

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Runs retention sweeps with a fresh session each time.

    A sweep that stops early (``max_batches``) leaves its cursor here and
    the next run resumes from it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: RetentionPolicyEngine,
        max_batches: int | None = None,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.max_batches = max_batches
        self._cursor = None
        self.last_report: SweepReport | None = None

    async def run_once(self) -> SweepReport:
        async with self.session_factory() as session:
            report = await self.engine.run_sweep(
                session, cursor=self._cursor, max_batches=self.max_batches
            )

        self._cursor = None if report.completed else report.cursor
        self.last_report = report
        return report
