"""Exception hierarchy shared by the core and the request handlers."""


class WhatschedError(Exception):
    """Base class for all whatsched errors."""


class SessionNotReadyError(WhatschedError):
    """The WhatsApp session is not in the ready state."""

    def __init__(self, message: str = "WhatsApp client not ready"):
        super().__init__(message)


class InvalidRequestError(WhatschedError):
    """Client input was rejected before any state was touched."""


class StoreError(WhatschedError):
    """Reading or writing the document store failed."""


class ProviderError(WhatschedError):
    """A provider operation (send, list chats) failed.

    `transient` tells callers whether retrying later could succeed.
    """

    transient: bool = False

    def __init__(self, message: str, transient: bool | None = None):
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class ProviderTransientError(ProviderError):
    """Network hiccups, timeouts, rate limits, 5xx responses."""

    transient = True


class ProviderPermanentError(ProviderError):
    """Rejected requests (bad chat id, bad credentials, malformed reply)."""

    transient = False
