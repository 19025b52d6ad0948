"""
Utility functions for the Rally to Azure DevOps migration tool.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import subprocess
from subprocess import CompletedProcess


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbose: bool = False, log_file: str | None = "migration.log") -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
    # urllib3 logs every request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def format_timestamp(timestamp: dt.datetime | None) -> str:
    """Format a timestamp for migrated content (e.g. "2024-01-15 10:30:45Z")."""
    if timestamp is None:
        return ""
    return timestamp.isoformat(sep=" ", timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> dt.datetime | None:
    """Parse an ISO 8601 timestamp as returned by Rally or Azure DevOps.

    Returns None when the value is empty or cannot be parsed.
    """
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


_PASS_PATH_PATTERN = re.compile(r"[\w-]+(?:/[\w-]+)*", re.ASCII)
_LOOPBACK_GPG_OPTS = "--pinentry-mode=loopback --passphrase-fd 0"


def _run_pass(pass_path: str, passphrase: str | None = None) -> str:
    env = None
    if passphrase is not None:
        env = {**os.environ, "PASSWORD_STORE_GPG_OPTS": _LOOPBACK_GPG_OPTS}
    result: CompletedProcess[str] = subprocess.run(  # noqa: S603
        ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
    )
    return result.stdout.strip()


def _needs_passphrase(error: subprocess.CalledProcessError) -> bool:
    stderr = (error.stderr or "").lower()
    return error.returncode == 2 and "gpg" in stderr and "public key decryption failed" in stderr


def _describe_failure(pass_path: str, error: subprocess.CalledProcessError) -> str:
    return (
        f"Failed to get value from pass at '{pass_path}' (return code {error.returncode}): "
        f"{(error.stderr or '').strip()}"
    )


def get_pass_value(pass_path: str) -> str:
    """Read a secret from the ``pass`` password store.

    Asks for the GPG passphrase on stdin when the agent has none cached.
    """
    if not _PASS_PATH_PATTERN.fullmatch(pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)

    try:
        return _run_pass(pass_path)
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        if e.returncode == 1 and "not in the password store" in (e.stderr or "").lower():
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if not _needs_passphrase(e):
            raise PassError(_describe_failure(pass_path, e)) from e

    # Non-interactive sessions cannot answer the prompt
    try:
        passphrase = input("Enter passphrase for GPG key used by pass: ")
    except EOFError as e:
        msg = "Passphrase input was interrupted. Please run the command in an interactive session."
        raise PassphraseRequiredError(msg) from e
    try:
        return _run_pass(pass_path, passphrase)
    except subprocess.CalledProcessError as e:
        raise PassphraseRequiredError(_describe_failure(pass_path, e)) from e
