"""FlowerScan: signed attendance credentials and idempotent flower redemption."""

__version__ = "0.3.0"
