from __future__ import annotations


class CalendarSyncError(Exception):
    pass


class AuthError(CalendarSyncError):
    """Permanent credential failure. The connection must be reconnected by the user."""

    def __init__(self, message: str = "Authentication failed", code: int = 401) -> None:
        super().__init__(message)
        self.code = code


class ProviderError(CalendarSyncError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    pass


class StaleTokenError(ProviderError):
    pass


class DiscoveryError(CalendarSyncError):
    pass


class PartialCalendarError(CalendarSyncError):
    def __init__(self, calendar_id: str, cause: BaseException) -> None:
        super().__init__(f"Calendar {calendar_id} failed: {cause}")
        self.calendar_id = calendar_id
        self.cause = cause


class DecryptionError(CalendarSyncError):
    pass


class NotFoundError(CalendarSyncError):
    pass


TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}


def raise_for_provider_status(status: int, body: str = "", *, context: str = "provider") -> None:
    if 200 <= status < 300:
        return
    snippet = (body or "")[:200]
    if status in {401, 403}:
        raise AuthError(f"{context} rejected credentials ({status})", code=status)
    if status == 410:
        raise StaleTokenError(f"{context} continuation token is gone ({status})", status=status)
    if status in TRANSIENT_STATUSES or status >= 500:
        raise TransientProviderError(f"{context} {status}: {snippet}", status=status)
    raise ProviderError(f"{context} {status}: {snippet}", status=status)
