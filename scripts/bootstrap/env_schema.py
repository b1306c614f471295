"""Deterministic environment variable schema for the tfstate bootstrap.

This module is the single source of truth for:
- which configuration keys exist
- which Terraform credential names are written/published
- defaults and mandatory flags

Routing (which keys go to the credentials file, Actions secrets or variables)
is declared once via `targets` and derived with filter_schema_by_targets().

Design goals:
- No heuristic classification (no regex guessing on key names).
- Unknown keys in dotenv inputs fail fast with clear error messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values


class EnvTarget(str, Enum):
    DOTENV_CONFIG = "dotenv_config"  # `.env.tfstate`
    CREDENTIALS_FILE = "credentials_file"  # `.env.tfstate.secrets`
    GH_ACTIONS_VAR = "gh_actions_var"  # GitHub Actions variable
    GH_ACTIONS_SECRET = "gh_actions_secret"  # GitHub Actions secret


class VarsEnum(str, Enum):
    # Azure subscription / identity
    AZURE_SUBSCRIPTION_ID = "AZURE_SUBSCRIPTION_ID"
    AZURE_LOCATION = "AZURE_LOCATION"
    AZURE_SP_NAME = "AZURE_SP_NAME"
    AZURE_SP_ROLE = "AZURE_SP_ROLE"
    AZURE_SP_SCOPE = "AZURE_SP_SCOPE"

    # Remote state backend
    TFSTATE_RESOURCE_GROUP = "TFSTATE_RESOURCE_GROUP"
    TFSTATE_STORAGE_ACCOUNT = "TFSTATE_STORAGE_ACCOUNT"
    TFSTATE_CONTAINER = "TFSTATE_CONTAINER"
    TFSTATE_KEY = "TFSTATE_KEY"

    # GitHub
    GITHUB_REPOSITORY = "GITHUB_REPOSITORY"


class SecretsEnum(str, Enum):
    # Terraform azurerm provider/backend credentials, in output order.
    ARM_CLIENT_ID = "ARM_CLIENT_ID"
    ARM_CLIENT_SECRET = "ARM_CLIENT_SECRET"
    ARM_SUBSCRIPTION_ID = "ARM_SUBSCRIPTION_ID"
    ARM_TENANT_ID = "ARM_TENANT_ID"


@dataclass(frozen=True)
class EnvKeySpec:
    key: VarsEnum | SecretsEnum
    mandatory: bool
    default: str | None = None
    targets: frozenset[EnvTarget] = frozenset()


class EnvValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[env] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


CONFIG_SCHEMA: tuple[EnvKeySpec, ...] = (
    EnvKeySpec(
        key=VarsEnum.AZURE_SUBSCRIPTION_ID,
        mandatory=False,
        targets=frozenset({EnvTarget.DOTENV_CONFIG}),
    ),
    EnvKeySpec(
        key=VarsEnum.AZURE_LOCATION,
        mandatory=True,
        default="westeurope",
        targets=frozenset({EnvTarget.DOTENV_CONFIG}),
    ),
    EnvKeySpec(
        key=VarsEnum.AZURE_SP_NAME,
        mandatory=True,
        default="terraform-tfstate-sp",
        targets=frozenset({EnvTarget.DOTENV_CONFIG}),
    ),
    EnvKeySpec(
        key=VarsEnum.AZURE_SP_ROLE,
        mandatory=True,
        default="Contributor",
        targets=frozenset({EnvTarget.DOTENV_CONFIG}),
    ),
    EnvKeySpec(
        key=VarsEnum.AZURE_SP_SCOPE,
        mandatory=False,
        default=None,
        targets=frozenset({EnvTarget.DOTENV_CONFIG}),
    ),
    EnvKeySpec(
        key=VarsEnum.TFSTATE_RESOURCE_GROUP,
        mandatory=True,
        default="tfstate-rg",
        targets=frozenset({EnvTarget.DOTENV_CONFIG, EnvTarget.GH_ACTIONS_VAR}),
    ),
    # Derived from the resource group + subscription when unset (see planner).
    EnvKeySpec(
        key=VarsEnum.TFSTATE_STORAGE_ACCOUNT,
        mandatory=False,
        default=None,
        targets=frozenset({EnvTarget.DOTENV_CONFIG, EnvTarget.GH_ACTIONS_VAR}),
    ),
    EnvKeySpec(
        key=VarsEnum.TFSTATE_CONTAINER,
        mandatory=True,
        default="tfstate",
        targets=frozenset({EnvTarget.DOTENV_CONFIG, EnvTarget.GH_ACTIONS_VAR}),
    ),
    EnvKeySpec(
        key=VarsEnum.TFSTATE_KEY,
        mandatory=True,
        default="terraform.tfstate",
        targets=frozenset({EnvTarget.DOTENV_CONFIG, EnvTarget.GH_ACTIONS_VAR}),
    ),
    EnvKeySpec(
        key=VarsEnum.GITHUB_REPOSITORY,
        mandatory=False,
        default=None,
        targets=frozenset({EnvTarget.DOTENV_CONFIG}),
    ),
)


# Terraform azurerm provider/backend credentials, in output order.
CREDENTIALS_SCHEMA: tuple[EnvKeySpec, ...] = tuple(
    EnvKeySpec(
        key=key,
        mandatory=True,
        targets=frozenset({EnvTarget.CREDENTIALS_FILE, EnvTarget.GH_ACTIONS_SECRET}),
    )
    for key in SecretsEnum
)


def _schema_keys(schema: Iterable[EnvKeySpec]) -> set[str]:
    return {spec.key.value for spec in schema}


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse dotenv file strictly.

    - Comments are ignored.
    - Keys are preserved even if they have empty values (""), so we can detect unknown keys.
    """
    kv: dict[str, str] = {}
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        val = "" if v is None else str(v).strip()
        kv[key] = val
    return kv


def env_subset(schema: Iterable[EnvKeySpec], environ: Mapping[str, str]) -> dict[str, str]:
    """Return non-empty schema keys from a process environment mapping."""
    out: dict[str, str] = {}
    for k in _schema_keys(schema):
        v = environ.get(k)
        if v is None:
            continue
        v = str(v).strip()
        if not v:
            continue
        out[k] = v
    return out


def validate_known_keys(schema: Iterable[EnvKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    allowed = _schema_keys(schema)
    unknown = sorted([k for k in kv.keys() if k not in allowed])
    if unknown:
        raise EnvValidationError(
            context=context,
            problems=["Unknown key(s): " + ", ".join(unknown)],
        )


def apply_defaults(schema: Iterable[EnvKeySpec], kv: dict[str, str]) -> dict[str, str]:
    out = dict(kv)
    for spec in schema:
        if spec.key.value in out and str(out.get(spec.key.value) or "").strip():
            continue
        if spec.default is None:
            continue
        out[spec.key.value] = spec.default
    return out


def missing_required(schema: Iterable[EnvKeySpec], kv: Mapping[str, str]) -> list[str]:
    missing: list[str] = []
    for spec in schema:
        if not spec.mandatory:
            continue
        val = str(kv.get(spec.key.value) or "").strip()
        if not val:
            missing.append(spec.key.value)
    return sorted(missing)


def validate_required(schema: Iterable[EnvKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    missing = missing_required(schema, kv)
    if missing:
        raise EnvValidationError(context=context, problems=["Missing mandatory key(s): " + ", ".join(missing)])


def filter_schema_by_targets(schema: Iterable[EnvKeySpec], *, include: set[EnvTarget]) -> list[EnvKeySpec]:
    return [spec for spec in schema if spec.targets & include]


def get_spec(schema: Iterable[EnvKeySpec], key: VarsEnum | SecretsEnum) -> EnvKeySpec:
    for spec in schema:
        if spec.key == key:
            return spec
    raise KeyError(key)


# Routing derived from the schema targets (schema order is output order).
CREDENTIAL_KEYS: tuple[SecretsEnum, ...] = tuple(
    spec.key
    for spec in filter_schema_by_targets(CREDENTIALS_SCHEMA, include={EnvTarget.CREDENTIALS_FILE})
)
SECRET_KEYS: tuple[SecretsEnum, ...] = tuple(
    spec.key
    for spec in filter_schema_by_targets(CREDENTIALS_SCHEMA, include={EnvTarget.GH_ACTIONS_SECRET})
)
BACKEND_VARIABLE_KEYS: tuple[VarsEnum, ...] = tuple(
    spec.key for spec in filter_schema_by_targets(CONFIG_SCHEMA, include={EnvTarget.GH_ACTIONS_VAR})
)
DOTENV_CONFIG_SCHEMA: tuple[EnvKeySpec, ...] = tuple(
    filter_schema_by_targets(CONFIG_SCHEMA, include={EnvTarget.DOTENV_CONFIG})
)
