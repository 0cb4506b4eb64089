from dataclasses import dataclass
from enum import Enum
from typing import Optional

from autoprov.src.apple.credentials import AuthSource, Credentials
from autoprov.src.core.errors import InvariantViolationError

MANUAL_SIGNING_REASON = "Automatically managed signing is disabled in Xcode for the project."


class SigningStrategy(str, Enum):
    XCODE_MANAGED = "xcode-managed"
    MANAGED_API_KEY = "managed-api-key"
    MANAGED_APPLE_ID = "managed-apple-id"


@dataclass
class StrategyDecision:
    strategy: SigningStrategy
    reason: str
    warning: Optional[Exception] = None


class StrategySelector:
    """Chooses who signs: Xcode itself or this tool"""

    def __init__(self, prefer_xcode_managed: bool, xcode_major_version: int, min_validity_days: int = 0):
        self.prefer_xcode_managed = prefer_xcode_managed
        self.xcode_major_version = xcode_major_version
        self.min_validity_days = min_validity_days

    def select(self, credentials: Credentials, project) -> StrategyDecision:
        if credentials.source == AuthSource.APPLE_ID:
            return StrategyDecision(
                SigningStrategy.MANAGED_APPLE_ID,
                "Apple ID authentication is not supported by xcodebuild, managing signing assets directly.",
            )

        if credentials.api_key is None:
            raise InvariantViolationError("No API key available while selecting a signing strategy")

        if not self.prefer_xcode_managed:
            return StrategyDecision(
                SigningStrategy.MANAGED_API_KEY,
                "Xcode managed signing is not preferred.",
            )

        if self.xcode_major_version < 13:
            return StrategyDecision(
                SigningStrategy.MANAGED_API_KEY,
                "Xcode managed signing with an API key requires Xcode 13 or higher.",
            )

        try:
            managed = project.is_signing_managed_automatically()
        except Exception as e:
            return StrategyDecision(SigningStrategy.MANAGED_API_KEY, MANUAL_SIGNING_REASON, warning=e)

        if not managed:
            return StrategyDecision(SigningStrategy.MANAGED_API_KEY, MANUAL_SIGNING_REASON)

        if self.min_validity_days > 0:
            return StrategyDecision(
                SigningStrategy.MANAGED_API_KEY,
                "Specifying the minimum validity period of the provisioning profile is not supported by xcodebuild.",
            )

        return StrategyDecision(
            SigningStrategy.XCODE_MANAGED,
            "Automatically managed signing is enabled in Xcode for the project.",
        )
