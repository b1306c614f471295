"""GitHub CLI helpers: command runner and repository detection."""

from __future__ import annotations

import logging
import shutil
import subprocess

logger = logging.getLogger("tfstate_bootstrap.gh")


class GhCliError(RuntimeError):
    def __init__(self, returncode: int, cmd: list[str], stderr: str):
        super().__init__(f"Command failed ({returncode}): {format_cmd(cmd)}\n{stderr.strip()}".rstrip())
        self.returncode = returncode
        self.cmd = cmd
        self.stderr = stderr


def format_cmd(argv: list[str]) -> str:
    # Avoid leaking secret values in error messages (e.g. `gh secret set ... -b <value>`).
    redacted: list[str] = []
    redact_next = False
    for a in argv:
        if redact_next:
            redacted.append("***")
            redact_next = False
            continue
        redacted.append(a)
        if a in {"-b", "--body"}:
            redact_next = True
    return " ".join(redacted)


def gh_available() -> bool:
    return shutil.which("gh") is not None


def run_gh_command(cmd: list[str], *, input_text: str | None = None) -> str:
    """Run a gh/git command and return stripped stdout; raise GhCliError on failure."""
    logger.debug("run: %s", format_cmd(cmd))
    p = subprocess.run(
        cmd,
        input=input_text,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        check=False,
    )
    if p.returncode != 0:
        raise GhCliError(p.returncode, cmd, p.stderr or "")
    return (p.stdout or "").strip()


def gh_logged_in() -> bool:
    try:
        run_gh_command(["gh", "auth", "status"])
    except GhCliError as e:
        logger.debug("gh auth status failed: %s", e.stderr.strip())
        return False
    return True


def detect_repo() -> str:
    # Try to resolve 'origin' remote first to avoid defaulting to upstream in forks.
    try:
        origin_url = run_gh_command(["git", "remote", "get-url", "origin"])
    except (GhCliError, FileNotFoundError):
        origin_url = ""
    if origin_url:
        return run_gh_command(["gh", "repo", "view", origin_url, "--json", "nameWithOwner", "-q", ".nameWithOwner"])

    # Fallback to default detection (uses current directory context)
    return run_gh_command(["gh", "repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"])
