"""
Caller authentication for the update check endpoint.

The credential is a bearer token. Static tables map known credentials to a
subject; a remote authenticator defers to an introspection endpoint.
Both fail closed.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from .errors import Unauthorized
from .util import constant_time_compare

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedCaller:
    subject: str
    authenticated: bool = True


class Authenticator(ABC):
    @abstractmethod
    def authenticate(self, credential: Optional[str]) -> AuthenticatedCaller:
        """
        Resolve a bearer credential to a caller.

        Raises:
            Unauthorized: If the credential is missing or not accepted
        """
        pass


class StaticTokenAuthenticator(Authenticator):
    """
    Fixed table of bearer credentials to subjects.

    Every entry is compared in constant time, so lookup cost does not
    depend on which credential matched.
    """

    def __init__(self, tokens: Dict[str, str]):
        self._tokens = {k: v for k, v in tokens.items() if k}

    def authenticate(self, credential: Optional[str]) -> AuthenticatedCaller:
        if not credential:
            raise Unauthorized("missing credential")
        subject = None
        for known, known_subject in self._tokens.items():
            if constant_time_compare(credential, known):
                subject = known_subject
        if subject is None:
            raise Unauthorized("unknown credential")
        return AuthenticatedCaller(subject=subject)

    @classmethod
    def from_spec(cls, spec: str) -> "StaticTokenAuthenticator":
        """Parse ``token:subject,token2:subject2``. A bare token is its own subject."""
        tokens = {}
        for item in spec.split(","):
            item = item.strip()
            if not item:
                continue
            token, sep, subject = item.partition(":")
            tokens[token.strip()] = subject.strip() if sep else token.strip()
        return cls(tokens)

    @classmethod
    def from_file(cls, path: str) -> "StaticTokenAuthenticator":
        """Load ``{"<credential>": "<subject>", ...}`` from JSON."""
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"client token file {path} must map credentials to subjects")
        return cls({str(k): str(v) for k, v in raw.items()})


class RemoteAuthenticator(Authenticator):
    """
    Token introspection over HTTP.

    POSTs ``{"token": credential}`` and expects ``{"active": true, "sub": ...}``.
    Any transport error, non-200 status or inactive token is Unauthorized.
    """

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def authenticate(self, credential: Optional[str]) -> AuthenticatedCaller:
        if not credential:
            raise Unauthorized("missing credential")
        try:
            response = self._session.post(self._url, json={"token": credential}, timeout=self._timeout)
        except requests.RequestException as e:
            logger.error("Introspection request to %s failed: %s", self._url, e)
            raise Unauthorized("introspection unavailable") from e

        if response.status_code != 200:
            raise Unauthorized(f"introspection returned {response.status_code}")
        try:
            result = response.json()
        except ValueError as e:
            raise Unauthorized("introspection returned invalid JSON") from e

        if not isinstance(result, dict) or result.get("active") is not True:
            raise Unauthorized("inactive credential")
        subject = result.get("sub")
        if not isinstance(subject, str) or not subject:
            raise Unauthorized("introspection returned no subject")
        return AuthenticatedCaller(subject=subject)
