"""
Shared constants and fakes for referral tests.
"""
from datetime import datetime

WALLET = "0xabcdef1111111111111111111111111111111111"
OTHER_WALLET = "0x2222222222222222222222222222222222222222"
REFERRER_WALLET = "0x9999999999999999999999999999999999999999"


class FakeClock:
    """Controllable clock for the tracker"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta):
        self.now = self.now + delta
