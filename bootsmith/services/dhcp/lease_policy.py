from datetime import timedelta
from random import Random
from time import time_ns

from bootsmith.services.dhcp.utils import is_zero_address

MIN_LEASE_HOURS = 24
MAX_LEASE_HOURS = 48


class LeasePolicy:
    """Lease durations and requested address checks.

    Durations are whole hours drawn from [min_lease_hours, max_lease_hours)
    so that clients booted together do not all renew at the same moment.
    The generator is owned by the policy and seeded once.
    """

    def __init__(
        self,
        min_lease_hours: int = MIN_LEASE_HOURS,
        max_lease_hours: int = MAX_LEASE_HOURS,
        rng: Random | None = None,
    ):
        if min_lease_hours < 0:
            raise ValueError("min_lease_hours must not be negative.")
        if min_lease_hours >= max_lease_hours:
            raise ValueError("min_lease_hours must be lower than max_lease_hours.")
        self.min_lease_hours = min_lease_hours
        self.max_lease_hours = max_lease_hours
        self._rng: Random = rng if rng is not None else Random(time_ns())

    def next_lease_duration(self) -> timedelta:
        return timedelta(hours=self._rng.randrange(self.min_lease_hours, self.max_lease_hours))

    @staticmethod
    def validate_requested_address(requested: bytes, assigned: bytes) -> bool:
        """True only for a 4 byte, non-zero address equal to the assigned one."""
        if len(requested) != 4 or is_zero_address(requested):
            return False
        return requested == assigned
