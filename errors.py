"""
Exception types raised by the analysis components
"""
from typing import Optional


class ContentGapError(Exception):
    """Base error carrying a message that is safe to show to end users"""

    default_user_message = "The analysis could not be completed. Please try again later."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class TelemetryError(ContentGapError):
    default_user_message = "Search performance data could not be retrieved."

    def __init__(self, message: str, status: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.status = status


class AuthorizationError(TelemetryError):
    default_user_message = (
        "Access to the search property was denied. Check that the property "
        "is registered for this account."
    )


class NoKeywordsError(ContentGapError):
    default_user_message = (
        "This page has not appeared in search results recently, so no keywords "
        "were found. Enter keywords manually to continue the analysis."
    )


class DiscoveryError(ContentGapError):
    default_user_message = "Competing pages could not be retrieved for this keyword."


class CaptchaDetected(DiscoveryError):
    default_user_message = "A CAPTCHA was detected. Please wait a while and try again."

    def __init__(self, message: str, own_position: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.own_position = own_position


class FetchError(ContentGapError):
    default_user_message = "The page could not be retrieved."

    def __init__(self, message: str, url: str = "", status: Optional[int] = None,
                 user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.url = url
        self.status = status


class NotFoundError(FetchError):
    default_user_message = "The page was not found (404)."


class ParseError(ContentGapError):
    default_user_message = "The analysis response could not be read."


class ProviderUnavailableError(ContentGapError):
    default_user_message = "No language model provider is configured."


class ProviderError(ContentGapError):
    default_user_message = "The language model request failed."
