"""Base exception types shared by the routing services."""

from typing import Optional


class ClixenError(Exception):
    """
    Base for domain errors.

    `code` goes into audit records; `user_message` is the only text that may
    be shown to the end user.
    """

    code = "error"
    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: Optional[str] = None, *, user_message: Optional[str] = None):
        super().__init__(detail or self.code)
        self.detail = detail
        if user_message is not None:
            self.user_message = user_message


class StoreError(ClixenError):
    """The persistence layer failed or timed out."""

    code = "store_error"
    user_message = "⚠️ Authentication system error. Please try again in a moment."
