"""Shared Google authentication for the Gmail and Calendar integrations.

Both gateways talk to Google APIs with the same OAuth user (or delegated
service account), so credential loading lives here rather than in each
integration module.  Gateways receive the resulting credentials explicitly,
which keeps them free of process-wide client state.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from google.auth.credentials import Credentials
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import credentials as oauth_credentials
from google.oauth2 import service_account

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
DEFAULT_SCOPES = GMAIL_SCOPES + CALENDAR_SCOPES

DEFAULT_TOKEN_PATH = "token.json"


logger = logging.getLogger(__name__)


class GoogleIntegrationError(RuntimeError):
    """Raised when a Google API call fails or credentials are unusable."""


@dataclass
class GoogleCredentials:
    """One set of credentials shared by the Gmail and Calendar clients."""

    credentials: Credentials

    @classmethod
    def from_env(cls, scopes: Sequence[str] = DEFAULT_SCOPES) -> "GoogleCredentials":
        """Resolve mailbox and calendar credentials, first match wins.

        * ``GOOGLE_APPLICATION_CREDENTIALS``: service account key file.  A
          service account has no inbox of its own, so reading orders needs
          ``GOOGLE_DELEGATED_USER`` naming the mailbox to act as.
        * ``GOOGLE_TOKEN_JSON``: the authorized-user token written by the
          OAuth consent flow, inline.
        * ``GOOGLE_TOKEN_PATH``: the same token on disk, ``token.json`` in
          the working directory when unset.

        ``scopes`` defaults to Gmail modify plus full Calendar access.  A token
        without a refresh token works only until it expires.
        """

        service_account_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        delegated_user = os.getenv("GOOGLE_DELEGATED_USER")
        token_json = os.getenv("GOOGLE_TOKEN_JSON")
        token_path = os.getenv("GOOGLE_TOKEN_PATH")

        if service_account_path:
            if not os.path.exists(service_account_path):
                raise GoogleIntegrationError(
                    "GOOGLE_APPLICATION_CREDENTIALS points to a missing file."
                )
            logger.debug("Loading Google service account credentials from %s", service_account_path)
            credentials = service_account.Credentials.from_service_account_file(
                service_account_path,
                scopes=list(scopes),
            )
            if delegated_user:
                credentials = credentials.with_subject(delegated_user)
            return cls(credentials=credentials)

        info: Optional[Dict[str, str]] = None
        if token_json:
            try:
                info = json.loads(token_json)
            except json.JSONDecodeError as exc:  # pragma: no cover - configuration guardrail
                raise GoogleIntegrationError("GOOGLE_TOKEN_JSON contains invalid JSON.") from exc
        else:
            if token_path and not os.path.exists(token_path):
                raise GoogleIntegrationError("GOOGLE_TOKEN_PATH points to a missing file.")
            path = token_path or DEFAULT_TOKEN_PATH
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as handle:
                    info = json.load(handle)

        if info:
            logger.debug("Loading Google OAuth user credentials from provided token info")
            credentials = oauth_credentials.Credentials.from_authorized_user_info(
                info,
                scopes=list(scopes),
            )
            return cls(credentials=credentials)

        raise GoogleIntegrationError(
            "Google credentials not configured. Set GOOGLE_APPLICATION_CREDENTIALS "
            "or provide OAuth token info via GOOGLE_TOKEN_JSON/GOOGLE_TOKEN_PATH."
        )

    def ensure_valid(self) -> Credentials:
        """Return usable credentials, refreshing them when they have expired."""

        if self.credentials.valid:
            return self.credentials

        # Service accounts mint their first token on refresh; user tokens need a refresh token.
        refreshable = isinstance(self.credentials, service_account.Credentials) or getattr(
            self.credentials, "refresh_token", None
        )
        if not refreshable:
            raise GoogleIntegrationError(
                "Google credentials are invalid and cannot be refreshed automatically."
            )
        logger.debug("Refreshing Google credentials")
        try:
            self.credentials.refresh(Request())
        except RefreshError as exc:
            raise GoogleIntegrationError(
                f"Google credentials could not be refreshed: {exc}"
            ) from exc
        return self.credentials


__all__ = [
    "CALENDAR_SCOPES",
    "DEFAULT_SCOPES",
    "GMAIL_SCOPES",
    "GoogleCredentials",
    "GoogleIntegrationError",
]
