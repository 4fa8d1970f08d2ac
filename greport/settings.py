"""Process-wide configuration for the Google Sheets report ledger."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


DEFAULT_CONF_DIR = os.getenv("GREPORT_CONF_DIR", "gconf")
DEFAULT_CREDENTIAL_FILE = os.getenv("GREPORT_CREDENTIAL_FILE", "gsheet-auth.json")
DEFAULT_TOKEN_FILE = os.getenv("GREPORT_TOKEN_FILE", "token.json")


@dataclass(frozen=True)
class GoogleConf:
    """Location of the OAuth client secrets and the persisted token."""

    conf_dir: str = DEFAULT_CONF_DIR
    credential_file: str = DEFAULT_CREDENTIAL_FILE
    token_file: str = DEFAULT_TOKEN_FILE

    @property
    def directory(self) -> Path:
        return Path(self.conf_dir).expanduser()

    @property
    def credential_path(self) -> Path:
        return self.directory / self.credential_file

    @property
    def token_path(self) -> Path:
        return self.directory / self.token_file


_CONF = GoogleConf()


def get_conf() -> GoogleConf:
    """Return the active configuration."""

    return _CONF


def set_conf(
    conf_dir: Optional[str] = None,
    credential_file: Optional[str] = None,
    token_file: Optional[str] = None,
    *,
    authorize: bool = False,
) -> GoogleConf:
    """Replace the process-wide configuration.

    Arguments left as ``None`` keep their current value. When ``authorize``
    is set the credentials are acquired straight away, running the console
    authorisation if no token has been persisted yet.
    """

    global _CONF

    updates = {}
    if conf_dir:
        updates["conf_dir"] = conf_dir
    if credential_file:
        updates["credential_file"] = credential_file
    if token_file:
        updates["token_file"] = token_file
    _CONF = replace(_CONF, **updates)
    logger.debug(
        "Configuration set: dir=%s credentials=%s token=%s",
        _CONF.conf_dir,
        _CONF.credential_file,
        _CONF.token_file,
    )

    if authorize:
        from greport.google_credentials import load_credentials

        load_credentials(_CONF)
    return _CONF


__all__ = [
    "DEFAULT_CONF_DIR",
    "DEFAULT_CREDENTIAL_FILE",
    "DEFAULT_TOKEN_FILE",
    "GoogleConf",
    "get_conf",
    "set_conf",
]
