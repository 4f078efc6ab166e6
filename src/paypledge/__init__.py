"""PayPledge — escrow-backed transaction settlement engine."""

__version__ = "0.1.0"
