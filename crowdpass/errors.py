# crowdpass/errors.py
"""
Domain error taxonomy.

Codec and calculator errors are surfaced to callers unchanged. Registry
errors never leave a pass half-mutated. Routers translate every subclass of
CrowdPassError to an HTTP status in one place (see crowdpass/main.py).
"""


class CrowdPassError(Exception):
    """Base class for every domain error."""
    status_code = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


# ── Credential codec ─────────────────────────────────────────────────────────
class InvalidToken(CrowdPassError):
    """The scanned token cannot be trusted."""


class MalformedToken(InvalidToken):
    pass


class ChecksumMismatch(InvalidToken):
    pass


class TokenStale(InvalidToken):
    """Token older than the maximum token age."""


TokenExpired = TokenStale


# ── Pass registry ────────────────────────────────────────────────────────────
class RegistryError(CrowdPassError):
    pass


class PassNotFound(RegistryError):
    status_code = 404


class PassNotActive(RegistryError):
    status_code = 409


class EntrySlotExpired(RegistryError):
    status_code = 409


class GroupSizeExceeded(RegistryError):
    pass


class InvalidHolderIdentifier(RegistryError):
    pass


class InvalidExtension(RegistryError):
    pass


class PaymentFailed(RegistryError):
    status_code = 402


# ── Sensor ingest ────────────────────────────────────────────────────────────
class SensorDataIncomplete(CrowdPassError):
    """Missing required field for the declared sensor type."""
    status_code = 422
