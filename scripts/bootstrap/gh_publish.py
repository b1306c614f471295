"""Publish credentials (and optionally backend settings) to GitHub Actions."""

from __future__ import annotations

from typing import Mapping

from scripts.bootstrap.credentials import CredentialBundle
from scripts.bootstrap.env_schema import BACKEND_VARIABLE_KEYS, SECRET_KEYS, VarsEnum
from scripts.bootstrap.gh_utils import GhCliError, run_gh_command


class PublishError(RuntimeError):
    def __init__(self, name: str, repo: str, cause: Exception):
        super().__init__(f"Failed to set {name} on {repo}: {cause}")
        self.name = name
        self.repo = repo


def set_secret(*, repo: str, name: str, value: str, dry_run: bool = False) -> None:
    if dry_run:
        print(f"[dry-run] set secret {name} (repo={repo})")
        return
    if not value:
        raise PublishError(name, repo, ValueError("empty value"))
    # Value goes over stdin so it never appears in argv.
    try:
        run_gh_command(["gh", "secret", "set", name, "-R", repo], input_text=value)
    except GhCliError as e:
        raise PublishError(name, repo, e) from e
    print(f"[ok] set secret {name} (repo={repo})")


def set_variable(*, repo: str, name: str, value: str, dry_run: bool = False) -> None:
    if dry_run:
        print(f"[dry-run] set var {name}={value!r} (repo={repo})")
        return
    try:
        run_gh_command(["gh", "variable", "set", name, "-R", repo, "-b", value])
    except GhCliError as e:
        raise PublishError(name, repo, e) from e
    print(f"[ok] set var {name}={value!r} (repo={repo})")


def publish_credentials(repo: str, bundle: CredentialBundle) -> int:
    """Set all four ARM_* secrets. Stops at the first failure."""
    bundle.validate()
    values = bundle.as_env()
    for key in SECRET_KEYS:
        set_secret(repo=repo, name=key.value, value=values[key.value])
    return len(SECRET_KEYS)


def publish_backend_variables(repo: str, settings: Mapping[VarsEnum, str], *, dry_run: bool = False) -> int:
    count = 0
    for key in BACKEND_VARIABLE_KEYS:
        value = str(settings.get(key) or "").strip()
        if not value:
            continue
        set_variable(repo=repo, name=key.value, value=value, dry_run=dry_run)
        count += 1
    return count
