"""Render harvested credentials to the console and to the credentials file.

The client secret only ever reaches disk through write_credentials_file();
everything printed is masked.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from scripts.bootstrap.env_schema import CREDENTIAL_KEYS, CREDENTIALS_SCHEMA, SecretsEnum, validate_required

MASK = "********"


@dataclass(frozen=True)
class CredentialBundle:
    client_id: str
    client_secret: str = field(repr=False)
    subscription_id: str = ""
    tenant_id: str = ""

    def as_env(self) -> dict[str, str]:
        """Terraform azurerm names, in output order."""
        values = {
            SecretsEnum.ARM_CLIENT_ID: self.client_id,
            SecretsEnum.ARM_CLIENT_SECRET: self.client_secret,
            SecretsEnum.ARM_SUBSCRIPTION_ID: self.subscription_id,
            SecretsEnum.ARM_TENANT_ID: self.tenant_id,
        }
        return {key.value: values[key] for key in CREDENTIAL_KEYS}

    def validate(self) -> None:
        validate_required(CREDENTIALS_SCHEMA, self.as_env(), context="credentials")


def mask(value: str) -> str:
    if not value:
        return ""
    return MASK


def render_exports(bundle: CredentialBundle, *, masked: bool = True) -> str:
    lines: list[str] = []
    for key, value in bundle.as_env().items():
        if key == SecretsEnum.ARM_CLIENT_SECRET.value and masked:
            value = mask(value)
        lines.append(f"export {key}={shlex.quote(value)}")
    return "\n".join(lines)


def render_credentials_file(bundle: CredentialBundle) -> str:
    bundle.validate()
    return "".join(f"{key}={value}\n" for key, value in bundle.as_env().items())


def write_credentials_file(path: Path, bundle: CredentialBundle) -> Path:
    """Write exactly four KEY=VALUE lines, readable by the owner only."""
    content = render_credentials_file(bundle)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    # O_CREAT's mode is ignored for files that already existed.
    os.chmod(path, 0o600)
    return path


def render_backend_config(*, resource_group: str, storage_account: str, container: str, key: str) -> str:
    """Terraform `-backend-config` file for the azurerm backend. Contains no secrets."""
    return "\n".join(
        [
            f'resource_group_name  = "{resource_group}"',
            f'storage_account_name = "{storage_account}"',
            f'container_name       = "{container}"',
            f'key                  = "{key}"',
            "",
        ]
    )


def write_backend_config(path: Path, **kwargs: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_backend_config(**kwargs), encoding="utf-8")
    return path


def render_summary(
    bundle: CredentialBundle | None,
    *,
    storage_account: str | None = None,
    storage_key: str | None = None,
    resource_group: str | None = None,
    container: str | None = None,
) -> str:
    lines: list[str] = []
    if resource_group:
        lines.append(f"  Resource group:   {resource_group}")
    if storage_account:
        lines.append(f"  Storage account:  {storage_account}")
    if container:
        lines.append(f"  Container:        {container}")
    if storage_key:
        lines.append(f"  Access key:       {mask(storage_key)}")
    if bundle is not None:
        lines.append(f"  Client ID:        {bundle.client_id}")
        lines.append(f"  Client secret:    {mask(bundle.client_secret)}")
        lines.append(f"  Subscription ID:  {bundle.subscription_id}")
        lines.append(f"  Tenant ID:        {bundle.tenant_id}")
    return "\n".join(lines)
