from __future__ import annotations


class FleetError(Exception):
    """Base class for fleet controller errors."""


class LockUnavailable(FleetError):
    """The lock is held by someone else. Retry later or skip the cycle."""


class StaleWrite(FleetError):
    """A state write was based on an outdated version or fence."""


class ProbeFailure(FleetError):
    pass


class ProbeTimeout(ProbeFailure):
    pass


class NoHealthyTargets(FleetError):
    pass


class ProvisioningFailure(FleetError):
    """Launch/terminate failed after all retry attempts."""


class DeletionProtected(FleetError):
    pass


class ConfigurationError(FleetError):
    """A safety setting is missing or disabled; the operation is denied."""
