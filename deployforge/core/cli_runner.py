"""Thin subprocess wrapper for vendor CLIs (cloud CLI, chart manager, kubectl).

All external collaborators are driven through their existing command-line
contracts.  Non-zero exits become ``CliCommandError``; provider refusals of
the caller's identity become ``AuthorizationDeniedError`` so they are never
retried.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from typing import Any

from deployforge.errors import AuthorizationDeniedError, DeployforgeError

logger = logging.getLogger(__name__)

_AUTHORIZATION_MARKERS: tuple[str, ...] = (
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "is not authorized to perform",
    "ExpiredToken",
    "InvalidIdentityToken",
    "(Forbidden)",
    "is forbidden",
    "Unauthorized",
)

_STDERR_TAIL_LINES = 20

# Flags whose value is a credential; never logged or echoed in errors.
_SECRET_FLAGS: frozenset[str] = frozenset({
    "--web-identity-token",
    "--secret-access-key",
    "--session-token",
    "--password",
    "--token",
})
_REDACTED = "***"


class CliCommandError(DeployforgeError):
    """A vendor CLI exited non-zero or could not be started."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


def is_authorization_failure(stderr: str) -> bool:
    """Return True if CLI error output indicates the identity was refused."""
    return any(marker in stderr for marker in _AUTHORIZATION_MARKERS)


def tail(text: str, lines: int = _STDERR_TAIL_LINES) -> str:
    """Return the last *lines* lines of *text*."""
    return "\n".join(text.strip().splitlines()[-lines:])


def redact(args: Sequence[str]) -> str:
    """Render *args* as a command line with credential values masked.

    Handles both ``--flag value`` and ``--flag=value`` forms.
    """
    shown: list[str] = []
    mask_next = False
    for arg in args:
        if mask_next:
            shown.append(_REDACTED)
            mask_next = False
            continue
        flag, sep, _ = arg.partition("=")
        if flag in _SECRET_FLAGS:
            if sep:
                shown.append(f"{flag}={_REDACTED}")
            else:
                shown.append(arg)
                mask_next = True
            continue
        shown.append(arg)
    return shlex.join(shown)


def run_cli(
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | os.PathLike[str] | None = None,
    timeout: float | None = None,
    input_text: str | None = None,
) -> str:
    """Run a CLI command and return its stdout.

    Parameters
    ----------
    args:
        Command and arguments; never passed through a shell.
    env:
        Extra environment variables layered over the current process
        environment (credentials, kubeconfig path).
    """
    command = redact(args)
    logger.debug("Running: %s", command)
    full_env = dict(os.environ)
    if env:
        full_env.update(env)
    try:
        proc = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            env=full_env,
            cwd=cwd,
            timeout=timeout,
            input=input_text,
        )
    except FileNotFoundError as exc:
        raise CliCommandError(f"Executable not found: {args[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise CliCommandError(
            f"Command timed out after {timeout}s: {command}"
        ) from exc

    if proc.returncode != 0:
        stderr = proc.stderr or ""
        if is_authorization_failure(stderr):
            raise AuthorizationDeniedError(
                f"Authorization denied running {args[0]}: {tail(stderr, 3)}"
            )
        raise CliCommandError(
            f"{command} exited {proc.returncode}: {tail(stderr)}",
            returncode=proc.returncode,
            stderr=stderr,
        )
    return proc.stdout


def run_cli_json(args: Sequence[str], **kwargs: Any) -> Any:
    """Run a CLI command whose stdout is JSON and return the parsed value."""
    out = run_cli(args, **kwargs)
    if not out.strip():
        return {}
    try:
        return json.loads(out)
    except json.JSONDecodeError as exc:
        raise CliCommandError(
            f"{args[0]} returned non-JSON output: {out[:200]!r}"
        ) from exc
