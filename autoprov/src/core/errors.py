from typing import Dict, List, Optional


class AutoprovError(Exception):
    """Base class for every error raised by autoprov"""


class ConfigurationError(AutoprovError):
    """Invalid or missing configuration"""


class AuthSelectionError(AutoprovError):
    """No usable credential could be selected for the remote authority"""


class UnsupportedEntitlementError(AutoprovError):
    """Targets require entitlements that cannot be provisioned through the API"""

    def __init__(self, keys_by_bundle_id: Dict[str, List[str]]):
        self.keys_by_bundle_id = keys_by_bundle_id
        details = "; ".join(
            f"{bundle_id}: {', '.join(keys)}"
            for bundle_id, keys in keys_by_bundle_id.items()
        )
        super().__init__(
            "Entitlements not supported by automatic provisioning, "
            f"generate the profile manually on the Developer Portal ({details})"
        )


class RemoteAPIError(AutoprovError):
    """The remote provisioning authority rejected or failed a request"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        if response_body:
            message = f"{message}: {response_body[:500]}"
        super().__init__(message)


class ResolutionIncompleteError(AutoprovError):
    """Some targets are still unresolved after reconciliation"""

    def __init__(self, bundle_ids: List[str]):
        self.bundle_ids = list(bundle_ids)
        super().__init__(
            "No certificate and profile set could be found for: "
            + ", ".join(self.bundle_ids)
        )


class AssetWriteError(AutoprovError):
    """Installing a certificate or a profile failed"""


class InvariantViolationError(AutoprovError):
    """Internal state that must never happen was reached"""


class ProfileParseError(AutoprovError):
    """A provisioning profile could not be decoded"""
