class FlowerScanError(Exception):
    pass


class ConfigError(FlowerScanError):
    pass


class StorageFailure(FlowerScanError):
    """Redemption could not be completed; the transaction was rolled back."""


class LockTimeout(StorageFailure):
    """The pair lock could not be acquired in time. Safe to retry."""
