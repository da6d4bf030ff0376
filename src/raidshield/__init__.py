"""RaidShield: adaptive, fault-tolerant abuse-mitigation decisions for chat communities."""

__version__ = "0.4.0"
