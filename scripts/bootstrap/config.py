"""Provisioning configuration: layered resolution and one-shot validation.

Precedence (highest first):
1. CLI flags
2. process environment
3. dotenv config file (default: `.env.tfstate`, optional)
4. schema defaults (non-interactive runs only)

In interactive mode, values not set by 1-3 are prompted for instead of
defaulted, and an empty answer aborts. All prompting (including the
`--force-recreate` confirmation) happens here, before any external call.
"""

from __future__ import annotations

import argparse
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from scripts.bootstrap.env_schema import (
    CONFIG_SCHEMA,
    DOTENV_CONFIG_SCHEMA,
    EnvValidationError,
    VarsEnum,
    apply_defaults,
    env_subset,
    get_spec,
    parse_dotenv_file,
    validate_known_keys,
    validate_required,
)

DEFAULT_ENV_FILE = ".env.tfstate"
DEFAULT_CREDENTIALS_FILE = ".env.tfstate.secrets"

# argparse dest -> schema key
FLAG_KEYS: dict[str, VarsEnum] = {
    "subscription": VarsEnum.AZURE_SUBSCRIPTION_ID,
    "location": VarsEnum.AZURE_LOCATION,
    "identity_name": VarsEnum.AZURE_SP_NAME,
    "role": VarsEnum.AZURE_SP_ROLE,
    "scope": VarsEnum.AZURE_SP_SCOPE,
    "resource_group": VarsEnum.TFSTATE_RESOURCE_GROUP,
    "storage_account": VarsEnum.TFSTATE_STORAGE_ACCOUNT,
    "container": VarsEnum.TFSTATE_CONTAINER,
    "state_key": VarsEnum.TFSTATE_KEY,
    "repo": VarsEnum.GITHUB_REPOSITORY,
}

PROMPT_LABELS: dict[VarsEnum, str] = {
    VarsEnum.TFSTATE_RESOURCE_GROUP: "Resource group for Terraform state",
    VarsEnum.TFSTATE_CONTAINER: "Blob container name",
    VarsEnum.AZURE_LOCATION: "Azure region",
    VarsEnum.AZURE_SP_NAME: "Service principal display name",
    VarsEnum.AZURE_SP_ROLE: "Role to assign to the service principal",
    VarsEnum.TFSTATE_KEY: "State blob key",
}

_STORAGE_ACCOUNT_RE = re.compile(r"^[a-z0-9]{3,24}$")
_CONTAINER_RE = re.compile(r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){2,62}$")
_RESOURCE_GROUP_RE = re.compile(r"^[-\w.()]{1,90}$")


@dataclass(frozen=True)
class ProvisioningConfig:
    resource_group: str
    container: str
    location: str
    identity_name: str
    role: str
    state_key: str
    storage_account: str = ""
    role_scope: str = ""
    subscription_id: str = ""
    github_repo: str = ""
    credentials_file: Path = Path(DEFAULT_CREDENTIALS_FILE)
    backend_config_file: Path | None = None
    force_recreate: bool = False
    publish: bool = True
    publish_backend_vars: bool = False
    skip_identity: bool = False
    skip_storage: bool = False
    dry_run: bool = False


def prompt_value(label: str, example: str | None = None) -> str:
    suffix = f" (e.g. {example})" if example else ""
    return input(f"{label}{suffix}: ").strip()


def prompt_yes_no(question: str, *, default: bool = False) -> bool:
    hint = "[Y/n]" if default else "[y/N]"
    answer = input(f"{question} {hint} ").strip().lower()
    if not answer:
        return default
    return answer in {"y", "yes"}


def _flag_values(args: argparse.Namespace) -> dict[str, str]:
    out: dict[str, str] = {}
    for dest, key in FLAG_KEYS.items():
        val = str(getattr(args, dest, None) or "").strip()
        if val:
            out[key.value] = val
    return out


def load_config_file(path: Path, *, required: bool) -> dict[str, str]:
    if not path.exists():
        if required:
            raise EnvValidationError(context=f"config ({path})", problems=[f"Config file not found: {path}"])
        return {}
    kv = parse_dotenv_file(path)
    validate_known_keys(DOTENV_CONFIG_SCHEMA, kv, context=f"config ({path.name})")
    return {k: v for k, v in kv.items() if v}


def validate_names(kv: Mapping[str, str], *, context: str) -> None:
    """Azure naming rules, checked up front so nothing is half-created."""
    problems: list[str] = []

    rg = kv.get(VarsEnum.TFSTATE_RESOURCE_GROUP.value, "")
    if rg and (not _RESOURCE_GROUP_RE.match(rg) or rg.endswith(".")):
        problems.append(
            f"{VarsEnum.TFSTATE_RESOURCE_GROUP.value}={rg!r}: 1-90 chars of letters, digits, '-', '_', '.', '()'; "
            "must not end with '.'"
        )

    account = kv.get(VarsEnum.TFSTATE_STORAGE_ACCOUNT.value, "")
    if account and not _STORAGE_ACCOUNT_RE.match(account):
        problems.append(f"{VarsEnum.TFSTATE_STORAGE_ACCOUNT.value}={account!r}: 3-24 lower-case letters and digits")

    container = kv.get(VarsEnum.TFSTATE_CONTAINER.value, "")
    if container and not _CONTAINER_RE.match(container):
        problems.append(
            f"{VarsEnum.TFSTATE_CONTAINER.value}={container!r}: 3-63 lower-case letters, digits and single hyphens"
        )

    scope = kv.get(VarsEnum.AZURE_SP_SCOPE.value, "")
    if scope and not scope.startswith("/"):
        problems.append(f"{VarsEnum.AZURE_SP_SCOPE.value}={scope!r}: must be a resource ID starting with '/'")

    if problems:
        raise EnvValidationError(context=context, problems=problems)


def resolve_config(
    args: argparse.Namespace,
    *,
    environ: Mapping[str, str],
    interactive: bool,
    prompt: Callable[[str, str | None], str] = prompt_value,
    confirm: Callable[..., bool] = prompt_yes_no,
) -> ProvisioningConfig:
    env_file_arg = getattr(args, "env_file", None)
    env_path = Path(env_file_arg or DEFAULT_ENV_FILE).expanduser()
    context = f"config (flags + env + {env_path.name})"

    merged = load_config_file(env_path, required=bool(env_file_arg))
    merged.update(env_subset(CONFIG_SCHEMA, environ))
    merged.update(_flag_values(args))

    if interactive:
        for key, label in PROMPT_LABELS.items():
            if merged.get(key.value):
                continue
            answer = prompt(label, get_spec(CONFIG_SCHEMA, key).default)
            if not answer:
                raise EnvValidationError(context=context, problems=[f"{label} must be non-empty ({key.value})"])
            merged[key.value] = answer

    merged = apply_defaults(CONFIG_SCHEMA, merged)
    validate_required(CONFIG_SCHEMA, merged, context=context)
    validate_names(merged, context=context)

    force_recreate = bool(getattr(args, "force_recreate", False))
    if force_recreate and not getattr(args, "yes", False):
        if not interactive:
            raise EnvValidationError(
                context=context,
                problems=["--force-recreate deletes the existing identity; pass --yes to confirm in non-interactive mode"],
            )
        question = (
            f"Delete and recreate service principal '{merged[VarsEnum.AZURE_SP_NAME.value]}'? "
            "Existing credentials stop working."
        )
        if not confirm(question, default=False):
            raise EnvValidationError(context=context, problems=["Recreation of the service principal was declined"])

    backend_file = getattr(args, "backend_config_file", None)
    return ProvisioningConfig(
        resource_group=merged[VarsEnum.TFSTATE_RESOURCE_GROUP.value],
        container=merged[VarsEnum.TFSTATE_CONTAINER.value],
        location=merged[VarsEnum.AZURE_LOCATION.value],
        identity_name=merged[VarsEnum.AZURE_SP_NAME.value],
        role=merged[VarsEnum.AZURE_SP_ROLE.value],
        state_key=merged[VarsEnum.TFSTATE_KEY.value],
        storage_account=merged.get(VarsEnum.TFSTATE_STORAGE_ACCOUNT.value, ""),
        role_scope=merged.get(VarsEnum.AZURE_SP_SCOPE.value, ""),
        subscription_id=merged.get(VarsEnum.AZURE_SUBSCRIPTION_ID.value, ""),
        github_repo=merged.get(VarsEnum.GITHUB_REPOSITORY.value, ""),
        credentials_file=Path(getattr(args, "credentials_file", None) or DEFAULT_CREDENTIALS_FILE).expanduser(),
        backend_config_file=Path(backend_file).expanduser() if backend_file else None,
        force_recreate=force_recreate,
        publish=bool(getattr(args, "publish", True)),
        publish_backend_vars=bool(getattr(args, "publish_backend_vars", False)),
        skip_identity=bool(getattr(args, "skip_identity", False)),
        skip_storage=bool(getattr(args, "skip_storage", False)),
        dry_run=bool(getattr(args, "dry_run", False)),
    )
