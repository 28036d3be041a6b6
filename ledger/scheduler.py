"""Background jobs for the membership ledger"""

import logging

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from referral.engine import ReferralEngine

logger = logging.getLogger(__name__)

UNLOCK_JOB_ID = "unlock_referral_rewards"


def run_reward_unlock(engine: ReferralEngine) -> int:
    """One sweep of pending rewards whose lock period has passed."""
    try:
        return engine.unlock_pending_rewards()
    except Exception:
        logger.exception("Referral reward unlock sweep failed")
        return 0


class LedgerScheduler:
    """Runs periodic ledger maintenance in a background thread."""

    def __init__(self, referrals: ReferralEngine, unlock_interval_seconds: int = 300):
        self.referrals = referrals
        self.unlock_interval_seconds = unlock_interval_seconds
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    def setup_jobs(self) -> None:
        if self.scheduler.get_job(UNLOCK_JOB_ID):
            self.scheduler.remove_job(UNLOCK_JOB_ID)

        self.scheduler.add_job(
            run_reward_unlock,
            trigger=IntervalTrigger(seconds=self.unlock_interval_seconds),
            args=[self.referrals],
            id=UNLOCK_JOB_ID,
            name="Unlock Referral Rewards",
        )

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Ledger scheduler started (unlock every %ds)", self.unlock_interval_seconds)

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Ledger scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running
