"""
Referral program on top of the membership ledger.

- One inviter per invitee, bound by an admin
- Percentage rewards on qualifying paid recharges, locked before withdrawal
- A one-time bonus of membership days for the invitee
- All-or-nothing withdrawals of available rewards
"""

from .engine import (
    ReferralEngine,
    calculate_reward_amount_cents,
    is_reward_eligible,
)
from .models import ReferralRewardStatus, ReferralBonusStatus

__all__ = [
    "ReferralEngine",
    "calculate_reward_amount_cents",
    "is_reward_eligible",
    "ReferralRewardStatus",
    "ReferralBonusStatus",
]
