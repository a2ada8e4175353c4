"""
Error taxonomy.

Every error carries the HTTP status the error middleware should answer with.
Insufficient-data skips are NOT errors and never raise.
"""


class SlocastError(Exception):
    """Base for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(SlocastError):
    """Missing or malformed input on a manually invoked action."""

    status_code = 400


class NotFound(SlocastError):
    """Acting on a recommendation, run or tenant that does not exist."""

    status_code = 404


class LeaseUnavailable(SlocastError):
    """Another run currently holds the tenant's write lease."""

    status_code = 409

    def __init__(self, tenant_id: str, resource: str):
        super().__init__(f"Tenant {tenant_id} is busy ({resource})")
        self.tenant_id = tenant_id
        self.resource = resource
