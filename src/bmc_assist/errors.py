"""Error taxonomy for the assistant endpoint.

Errors raised before the response body is committed map 1:1 to an HTTP
status and are rendered as ``{"error": message}`` by the handler registered
in ``main.py``. Stream failures happen after the SSE headers are sent, so
they only carry the message forwarded in-band to the client.
"""

from typing import Optional


class AssistantError(Exception):
    """Base exception for all request pipeline errors."""

    status_code: int = 500
    message: str = "Une erreur est survenue."

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MethodNotAllowed(AssistantError):
    status_code = 405
    message = "Méthode non autorisée."


class RateLimited(AssistantError):
    """Client exceeded its request budget for the current window."""

    status_code = 429
    message = "Trop de requêtes. Réessayez dans une minute."

    def __init__(self, message: Optional[str] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class Unauthenticated(AssistantError):
    status_code = 401
    message = "Authentification requise."


class BadRequest(AssistantError):
    """Required request fields are missing or malformed."""

    status_code = 400
    message = "Paramètres manquants."


class Misconfigured(AssistantError):
    """A credential the pipeline depends on is not configured."""

    status_code = 500
    message = "Clé API non configurée."


class StreamFailure(AssistantError):
    """Failure after streaming started; reported in-band, never as a status."""


class StreamOpenFailure(StreamFailure):
    """Provider rejected or was unreachable before any text was streamed."""

    message = "Désolé, une erreur est survenue."


class StreamRuntimeFailure(StreamFailure):
    """Provider stream dropped, errored or exceeded its deadline mid-way."""

    message = "\n\n[Erreur de connexion]"
