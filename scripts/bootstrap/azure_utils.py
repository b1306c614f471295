#!/usr/bin/env python3
"""Shared Azure CLI utilities."""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from enum import Enum
from typing import Any

logger = logging.getLogger("tfstate_bootstrap.az")

# Arguments whose following value must never be echoed.
_SECRET_FLAGS = {"--password", "--value", "--account-key", "--secret"}

# az surfaces ARM/Graph errors as "(Code) Message" on stderr.
_ERROR_CODE_RE = re.compile(r"\((?P<code>[A-Za-z][A-Za-z0-9_.]*)\)")


class ErrorKind(str, Enum):
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    PROPAGATION = "propagation"
    UNKNOWN = "unknown"


_CODE_KINDS: dict[str, ErrorKind] = {
    "RoleAssignmentExists": ErrorKind.ALREADY_EXISTS,
    "StorageAccountAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "ContainerAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "ResourceGroupAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "ResourceNotFound": ErrorKind.NOT_FOUND,
    "ResourceGroupNotFound": ErrorKind.NOT_FOUND,
    "StorageAccountNotFound": ErrorKind.NOT_FOUND,
    "Request_ResourceNotFound": ErrorKind.NOT_FOUND,
    "AuthorizationFailed": ErrorKind.UNAUTHORIZED,
    "Authorization_RequestDenied": ErrorKind.UNAUTHORIZED,
    "InvalidAuthenticationToken": ErrorKind.UNAUTHORIZED,
    "PrincipalNotFound": ErrorKind.PROPAGATION,
}

# Fallback for errors az prints without a "(Code)" prefix.
_TEXT_KINDS: tuple[tuple[str, ErrorKind], ...] = (
    ("already exists", ErrorKind.ALREADY_EXISTS),
    ("does not exist", ErrorKind.NOT_FOUND),
    ("could not be found", ErrorKind.NOT_FOUND),
    ("not found", ErrorKind.NOT_FOUND),
    ("az login", ErrorKind.UNAUTHORIZED),
    ("forbidden", ErrorKind.UNAUTHORIZED),
    ("insufficient privileges", ErrorKind.UNAUTHORIZED),
)

# Storage accounts live in a global namespace: "already taken" is someone else's account.
_FATAL_CODES = {"StorageAccountAlreadyTaken"}


class AzCliError(subprocess.CalledProcessError):
    """A failed az invocation, classified into an explicit error kind."""

    def __init__(self, returncode: int, cmd: list[str], *, output: str | None = None, stderr: str | None = None):
        super().__init__(returncode, cmd, output=output, stderr=stderr)
        self.code = parse_error_code(stderr)
        self.kind = classify_az_error(stderr)

    def __str__(self) -> str:
        err = (self.stderr or "").strip()
        return f"az command failed ({self.returncode}, {self.kind.value}): {format_az_cmd(self.cmd)}\n{err}".rstrip()


def parse_error_code(stderr: str | None) -> str | None:
    match = _ERROR_CODE_RE.search(stderr or "")
    return match.group("code") if match else None


def classify_az_error(stderr: str | None) -> ErrorKind:
    code = parse_error_code(stderr)
    if code in _FATAL_CODES:
        return ErrorKind.UNKNOWN
    if code and code in _CODE_KINDS:
        return _CODE_KINDS[code]

    err = (stderr or "").lower()
    for needle, kind in _TEXT_KINDS:
        if needle in err:
            return kind
    return ErrorKind.UNKNOWN


def format_az_cmd(argv: list[str]) -> str:
    # Avoid leaking secret values in logs and error messages.
    redacted: list[str] = []
    redact_next = False
    for a in argv:
        if redact_next:
            redacted.append("***")
            redact_next = False
            continue
        redacted.append(a)
        if a in _SECRET_FLAGS:
            redact_next = True
    return " ".join(redacted)


def az_available() -> bool:
    return shutil.which("az") is not None


def run_az_command(
    args: list[str],
    *,
    capture_output: bool = True,
    ignore_errors: bool = False,
    verbose: bool = True,
) -> Any:
    """Run an azure cli command.

    Returns parsed JSON when the output is JSON, the stripped text otherwise, and
    None for empty output. Failures raise AzCliError unless ignore_errors is set.
    """
    cmd = ["az"] + args
    if verbose:
        print(f"[az] {format_az_cmd(cmd)}")
    else:
        logger.debug("az: %s", format_az_cmd(cmd))

    # Check if az is installed
    if not az_available():
        if ignore_errors:
            return None
        raise RuntimeError("Azure CLI (az) not found. Please install it.")

    result = subprocess.run(
        cmd,
        stdout=subprocess.PIPE if capture_output else None,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )

    if result.returncode != 0:
        if ignore_errors:
            logger.debug("az failed (ignored): %s", (result.stderr or "").strip())
            return None

        # Callers decide whether the failure is fatal; the orchestrator surfaces stderr verbatim.
        logger.debug("az failed (%s): %s", result.returncode, (result.stderr or "").strip())
        raise AzCliError(result.returncode, cmd, output=result.stdout, stderr=result.stderr)

    if capture_output and result.stdout:
        out = result.stdout.strip()
        if not out:
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError:
            return out

    return None


def az_logged_in() -> bool:
    res = run_az_command(["account", "show", "--output", "json"], ignore_errors=True, verbose=False)
    return isinstance(res, dict) and bool(res.get("id"))


def get_az_account_info(subscription_id: str | None = None) -> dict[str, str]:
    """Return dictionary with 'id' (subscription) and 'tenantId'.

    With subscription_id, that subscription is looked up without changing the
    CLI's default (`az account set` would persist to ~/.azure).
    """
    args = ["account", "show", "--output", "json"]
    if subscription_id:
        args += ["--subscription", subscription_id]
    res = run_az_command(args, capture_output=True, verbose=False)
    if isinstance(res, dict):
        return {
            "id": str(res.get("id") or ""),
            "tenantId": str(res.get("tenantId") or ""),
        }
    return {"id": "", "tenantId": ""}
