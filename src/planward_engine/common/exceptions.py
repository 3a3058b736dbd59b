"""Planward-Engine exception hierarchy."""


class PlanwardError(Exception):
    """Base exception for all Planward errors."""

    status_code = 500

    def __init__(self, message: str = "", code: str = "PLANWARD_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class EntitlementDeniedError(PlanwardError):
    """Raised when a team's plan does not grant a required feature or limit."""

    status_code = 403

    def __init__(self, message: str = "Entitlement not available"):
        super().__init__(message, code="ENTITLEMENT_DENIED")


class ProviderUnavailableError(PlanwardError):
    """Raised when the external billing provider cannot serve a request."""

    status_code = 502

    def __init__(self, message: str = "Billing provider unavailable"):
        super().__init__(message, code="PROVIDER_UNAVAILABLE")


class CatalogInconsistencyError(PlanwardError):
    """Raised when a referenced plan or price is missing from the catalog."""

    status_code = 422

    def __init__(self, message: str = "Plan catalog is inconsistent"):
        super().__init__(message, code="CATALOG_INCONSISTENCY")


class TeamNotFoundError(PlanwardError):
    """Raised when a team cannot be found while resolving its billing scope."""

    status_code = 404

    def __init__(self, message: str = "Team not found"):
        super().__init__(message, code="NOT_FOUND")
