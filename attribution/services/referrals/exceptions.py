"""
Referral Service Domain Exceptions

All exceptions raised by the referral service layer. The tracker converts
every one of them into a recorded error on the progress record; none of
them reach trigger callers.
"""


class ReferralServiceError(Exception):
    """Base exception for referral service errors"""
    pass


class ReferralApiError(ReferralServiceError):
    """Base exception for Remote Attribution Service calls"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ReferralApiAuthError(ReferralApiError):
    """Authentication/authorization error (401, 403) - not retried in-call"""
    pass


class ReferralApiInvalidResponseError(ReferralApiError):
    """Client error (4xx) or malformed response body - not retried in-call"""
    pass


class ReferralApiUnavailableError(ReferralApiError):
    """Network failure, timeout or 5xx after in-call retries were exhausted"""
    pass


class ProgressStoreError(ReferralServiceError):
    """Progress could not be read from or written to the store"""
    pass
