"""
Utility functions for the Flarum to Discourse migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess

logger: logging.Logger = logging.getLogger(__name__)

_PASS_GPG_OPTS: dict[str, str] = {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid or the entry does not exist."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbose: bool = False, log_file: str = "migration.log") -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_file, mode="a")],
    )
    # Request-level chatter drowns out the per-record diagnostics
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _validate_pass_path(pass_path: str) -> None:
    if not re.fullmatch(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def _pass_failure_message(pass_path: str, error: subprocess.CalledProcessError, suffix: str = "") -> str:
    return (
        f"Failed to get value from pass at '{pass_path}'{suffix}.\n"
        f"Output: {error.stdout.strip()}\n"
        f"Error: {error.stderr.strip()}\n"
        f"Return code: {error.returncode}"
    )


def get_pass_value(pass_path: str) -> str:
    """Get value from pass utility at specified path."""
    _validate_pass_path(pass_path)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if e.returncode != 2 or "public key decryption failed" not in stderr:
            raise PassError(_pass_failure_message(pass_path, e)) from e

        # The GPG key is locked. This fails in non-interactive sessions (e.g. pytest).
        try:
            passphrase = input("Enter passphrase for GPG key used by pass: ")
        except EOFError as eof:
            msg = "Passphrase input was interrupted. Please run the command in an interactive session."
            raise PassphraseRequiredError(msg) from eof

        try:
            result = subprocess.run(  # noqa: S603
                ["pass", pass_path],
                input=passphrase,
                capture_output=True,
                text=True,
                check=True,
                env=os.environ.copy() | _PASS_GPG_OPTS,
            )
        except subprocess.CalledProcessError as retry_error:
            raise PassphraseRequiredError(
                _pass_failure_message(pass_path, retry_error, " with passphrase")
            ) from retry_error

    return result.stdout.strip()


def get_secret(env_var: str, pass_path: str | None = None, default_pass_path: str | None = None) -> str | None:
    """Get a secret from an explicit pass path, the environment, or a default pass location.

    Returns None when no source provides a value.
    """
    if pass_path:
        return get_pass_value(pass_path)

    value: str | None = os.environ.get(env_var)
    if value:
        return value

    if default_pass_path is None:
        return None
    try:
        return get_pass_value(default_pass_path)
    except PassError:
        logger.warning(f"No value for {env_var} specified nor found in pass at '{default_pass_path}'")
        return None
