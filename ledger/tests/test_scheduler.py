"""Tests for the background reward unlock job."""

from conftest import DAY
from ledger.models import RechargeReason
from ledger.scheduler import UNLOCK_JOB_ID, LedgerScheduler, run_reward_unlock


class _BrokenEngine:
    def unlock_pending_rewards(self):
        raise RuntimeError("database unavailable")


class TestLedgerScheduler:
    def test_unlock_job_promotes_matured_rewards(self, service, clock):
        inviter, _ = service.create_user("inviter")
        invitee, _ = service.create_user("invitee")
        service.referrals.bind_referral(inviter.id, invitee.id)
        service.recharge(invitee.id, 30, RechargeReason.WECHAT_PAY, 9900)

        clock.advance(7 * DAY)

        assert run_reward_unlock(service.referrals) == 1

    def test_failed_sweep_is_logged_not_raised(self, caplog):
        assert run_reward_unlock(_BrokenEngine()) == 0
        assert "unlock sweep failed" in caplog.text

    def test_start_registers_single_job(self, service):
        scheduler = LedgerScheduler(service.referrals, unlock_interval_seconds=3600)
        try:
            scheduler.start()
            scheduler.start()

            assert scheduler.running
            jobs = scheduler.scheduler.get_jobs()
            assert [job.id for job in jobs] == [UNLOCK_JOB_ID]
        finally:
            scheduler.shutdown()

        assert not scheduler.running
