from __future__ import annotations


class PanelSyncError(Exception):
    """Base error for panelsync."""

    kind = "internal_error"


class ProvisioningError(PanelSyncError):
    """Failure that surfaces in attempt logs and provisioning results."""

    kind = "provisioning_error"


class NoPanelBoundError(ProvisioningError):
    """Plan has no bound panel, or every bound panel is inactive."""

    kind = "no_panel_bound"


class FamilyMismatchError(ProvisioningError):
    """A bound panel speaks a different API family than its plan declares."""

    kind = "family_mismatch"


class PanelConfigError(ProvisioningError):
    """Panel or binding configuration is unusable (duplicate primary, missing services)."""

    kind = "panel_config"


class InvalidRequestError(ProvisioningError):
    """Request values were rejected before anything was sent (quota, duration, username)."""

    kind = "invalid_request"


class PanelAuthError(ProvisioningError):
    """Panel rejected the admin credentials."""

    kind = "auth_error"


class TransportTimeoutError(ProvisioningError):
    """Panel did not answer within the call timeout."""

    kind = "transport_timeout"


class TransportError(ProvisioningError):
    """Network failure talking to the panel (not a timeout, not an HTTP answer)."""

    kind = "transport_error"


class PanelRejectedError(ProvisioningError):
    """Panel answered with a well-formed 4xx/5xx."""

    kind = "panel_rejected"

    def __init__(self, message: str, *, status_code: int, body: object | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AccountNotFoundError(ProvisioningError):
    """Panel has no account with the requested username."""

    kind = "account_not_found"


class NotImplementedForFamilyError(ProvisioningError):
    """Operation is not built for this panel family."""

    kind = "not_implemented_for_family"


class AlreadyProvisionedError(PanelSyncError):
    """Subscription already has a live account; creating another would double-provision."""

    kind = "already_provisioned"


class SubscriptionNotFoundError(PanelSyncError):
    kind = "subscription_not_found"


class SubscriptionStateError(PanelSyncError):
    """Subscription lifecycle status does not allow the requested action."""

    kind = "subscription_state"


class PanelNotFoundError(PanelSyncError):
    kind = "panel_not_found"
