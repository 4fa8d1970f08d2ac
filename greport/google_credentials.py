"""Helpers for loading and authorising the Google OAuth client credentials.

The client secrets file describes an "installed application" OAuth client.
The first run performs a console authorisation: the authorisation URL is
printed, the operator pastes the code back and the resulting token is
persisted next to the client secrets. Later runs load (and if needed
refresh) the persisted token.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from greport.settings import GoogleConf, get_conf

logger = logging.getLogger(__name__)

__all__ = [
    "CredentialError",
    "CredentialsFileInvalidError",
    "CredentialsNotFoundError",
    "REQUIRED_FIELDS",
    "SCOPES",
    "load_client_config",
    "load_credentials",
]


class CredentialError(Exception):
    """Base error raised when credential material cannot be obtained."""


class CredentialsNotFoundError(CredentialError):
    """Raised when the client secrets file does not exist."""


class CredentialsFileInvalidError(CredentialError):
    """Raised when a client secrets JSON file is missing required data."""


SCOPES: Sequence[str] = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
)

REQUIRED_FIELDS: Sequence[str] = ("client_id", "client_secret", "redirect_uris")
_CLIENT_TYPES: Sequence[str] = ("installed", "web")


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read JSON file: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Client secrets JSON is empty.")

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise CredentialsFileInvalidError("Client secrets JSON must be an object.")
    return payload


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    client_type = next((key for key in _CLIENT_TYPES if key in payload), None)
    if client_type is None:
        raise CredentialsFileInvalidError("JSON missing client section: installed")

    section = payload[client_type]
    if not isinstance(section, Mapping):
        raise CredentialsFileInvalidError(f"JSON section {client_type!r} must be an object")

    missing: list[str] = []
    for field in REQUIRED_FIELDS:
        value = section.get(field)
        if field == "redirect_uris":
            if not isinstance(value, list) or not value:
                missing.append(field)
        elif not isinstance(value, str) or not value.strip():
            missing.append(field)

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    return {client_type: dict(section)}


def load_client_config(path: Path) -> Dict[str, object]:
    """Return the validated OAuth client configuration stored at ``path``."""

    return _validate_payload(_load_json(path))


def _redirect_uri(client_config: Mapping[str, object]) -> str:
    section = next(iter(client_config.values()))
    return str(section["redirect_uris"][0])  # type: ignore[index]


def _authorize_from_console(
    client_config: Mapping[str, object],
    scopes: Sequence[str],
    prompt: Callable[[str], str],
):
    flow = InstalledAppFlow.from_client_config(
        dict(client_config), scopes=list(scopes), redirect_uri=_redirect_uri(client_config)
    )
    auth_url, _state = flow.authorization_url(access_type="offline", prompt="consent")
    print(f"Authorize this app by visiting this url: {auth_url}")
    code = prompt("Enter the code from that page here: ").strip()
    if not code:
        raise CredentialError("No authorisation code was entered.")
    flow.fetch_token(code=code)
    return flow.credentials


def _save_token(credentials, token_path: Path) -> None:
    token_path.parent.mkdir(parents=True, exist_ok=True)
    with token_path.open("w", encoding="utf-8") as handle:
        handle.write(credentials.to_json())
    logger.info("Token stored to %s", token_path)


def load_credentials(
    conf: Optional[GoogleConf] = None,
    *,
    prompt: Callable[[str], str] = input,
    scopes: Sequence[str] = SCOPES,
):
    """Return authorised user credentials for the configured OAuth client.

    Raises :class:`CredentialsNotFoundError` when the client secrets file is
    missing and :class:`CredentialsFileInvalidError` when it is malformed.
    """

    conf = conf or get_conf()
    secret_path = conf.credential_path
    if not secret_path.exists():
        raise CredentialsNotFoundError(f"Client secrets file not found: {secret_path}")
    client_config = load_client_config(secret_path)

    token_path = conf.token_path
    credentials = None
    if token_path.exists():
        try:
            credentials = Credentials.from_authorized_user_file(str(token_path), list(scopes))
        except ValueError as exc:
            raise CredentialsFileInvalidError(f"Token file is invalid: {exc}") from exc

    if credentials and credentials.valid:
        return credentials

    if credentials and credentials.expired and credentials.refresh_token:
        logger.info("Refreshing expired token from %s", token_path)
        credentials.refresh(Request())
    else:
        credentials = _authorize_from_console(client_config, scopes, prompt)
    _save_token(credentials, token_path)
    return credentials
