import hmac
from typing import Protocol

from catalog.errors import AuthorizationError


class Authorizer(Protocol):
    def authorize(self, token: str | None) -> None: ...


class StaticTokenAuthorizer:
    def __init__(self, tokens: tuple[str, ...]) -> None:
        self._tokens = tuple(tokens)

    def authorize(self, token: str | None) -> None:
        if not token:
            raise AuthorizationError("Access denied. No token provided.")
        if not any(hmac.compare_digest(token, allowed) for allowed in self._tokens):
            raise AuthorizationError("Access denied. Invalid token.")
