"""Exception types raised by the token broker core.

Only lightweight, **data-carrying** exceptions live here so that the HTTP
layer can transform them into standard OAuth error responses.  Expected
failures inside components (expired token, wrong verifier, unreachable
provider) are *not* exceptions: they are returned as ``None`` / ``False``.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised at startup when required settings are missing or invalid."""


class OAuthError(RuntimeError):
    """An OAuth 2.1 protocol error destined for the client.

    ``description`` is always a fixed, human-readable sentence; it never carries
    exception text, token material or which credential part mismatched.
    """

    def __init__(
        self,
        error: str,
        description: str | None = None,
        *,
        status_code: int = 400,
    ) -> None:
        super().__init__(description or error)
        self.error: str = error
        self.description: str | None = description
        self.status_code: int = status_code

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload **without secrets**."""
        payload = {"error": self.error}
        if self.description:
            payload["error_description"] = self.description
        return payload


class ClientRegistrationError(ValueError):
    """Raised for an invalid RFC 7591 client registration request."""

    def __init__(self, error: str, description: str) -> None:
        super().__init__(description)
        self.error: str = error
        self.description: str = description

    def to_payload(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}
