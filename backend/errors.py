"""Exceptions raised across the transfer pipeline."""


class KarliShareError(Exception):
    """Base class for all application errors."""


class PersistenceError(KarliShareError):
    """The table store rejected or failed a create/update/query."""


class NotFoundError(KarliShareError):
    """No transfer or session row matches the requested id."""


class InvalidTransitionError(KarliShareError):
    """An update would break the forward-only transfer lifecycle."""


class MalformedPayloadError(KarliShareError):
    """A scanned QR payload could not be parsed into a known shape."""


class TransferIOError(KarliShareError):
    """Local file access or an edge function call failed during a transfer."""
