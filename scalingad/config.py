"""Configuration for the job escrow engine.

Fee rate and currency are explicit values handed to the services rather
than module constants, so tests and deployments can vary them.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


@dataclass
class EscrowConfig:
    """Engine-wide settings."""

    # Share of the job amount kept by the platform, fixed at job creation
    platform_fee_rate: Decimal = Decimal("0.10")
    default_currency: str = "USD"

    # Payout retry policy
    payout_max_attempts: int = 5
    payout_retry_backoff_seconds: int = 60

    # Maximum age of a signed webhook timestamp
    webhook_tolerance_seconds: int = 300

    # Tag written into processor metadata
    platform_name: str = "scalingad"

    def __post_init__(self):
        self.platform_fee_rate = Decimal(str(self.platform_fee_rate))
        if not (Decimal("0") <= self.platform_fee_rate < Decimal("1")):
            raise ValueError(f"platform_fee_rate must be in [0, 1): {self.platform_fee_rate}")

        self.default_currency = (self.default_currency or "").upper()
        if len(self.default_currency) != 3 or not self.default_currency.isalpha():
            raise ValueError(f"Invalid currency code: {self.default_currency!r}")

        if self.payout_max_attempts < 1:
            raise ValueError("payout_max_attempts must be at least 1")
        if self.payout_retry_backoff_seconds < 0:
            raise ValueError("payout_retry_backoff_seconds cannot be negative")
        if self.webhook_tolerance_seconds <= 0:
            raise ValueError("webhook_tolerance_seconds must be positive")

    @classmethod
    def from_env(cls, prefix: str = "SCALINGAD_") -> "EscrowConfig":
        """Build a config from environment variables, falling back to defaults."""
        kwargs = {}

        raw_rate = os.environ.get(f"{prefix}PLATFORM_FEE_RATE")
        if raw_rate:
            try:
                kwargs["platform_fee_rate"] = Decimal(raw_rate)
            except InvalidOperation:
                raise ValueError(f"{prefix}PLATFORM_FEE_RATE is not a decimal: {raw_rate!r}")

        currency = os.environ.get(f"{prefix}CURRENCY")
        if currency:
            kwargs["default_currency"] = currency

        for field_name in (
            "payout_max_attempts",
            "payout_retry_backoff_seconds",
            "webhook_tolerance_seconds",
        ):
            raw = os.environ.get(f"{prefix}{field_name.upper()}")
            if raw:
                kwargs[field_name] = int(raw)

        platform = os.environ.get(f"{prefix}PLATFORM_NAME")
        if platform:
            kwargs["platform_name"] = platform

        return cls(**kwargs)
