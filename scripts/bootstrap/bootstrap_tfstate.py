#!/usr/bin/env python3
"""Bootstrap an Azure remote-state backend for Terraform.

Creates (or reuses) everything Terraform's azurerm backend needs, and a service
principal for automation:

- service principal (identity) + role assignment (default: Contributor on the subscription)
- resource group, storage account, blob container for state
- credentials file with ARM_CLIENT_ID / ARM_CLIENT_SECRET / ARM_SUBSCRIPTION_ID / ARM_TENANT_ID
- GitHub Actions secrets with the same four names

Safe to re-run: existing resources are reused. An existing service principal
gets its secret rotated (its old secret cannot be read back); pass
--force-recreate to delete and recreate it instead.

Requirements:
- Azure CLI installed and logged in (az login)
- GitHub CLI installed and authenticated (gh auth login), unless --no-publish

Examples:
    python3 scripts/bootstrap/bootstrap_tfstate.py --dry-run
    python3 scripts/bootstrap/bootstrap_tfstate.py -g tfstate-rg --location westeurope
    python3 scripts/bootstrap/bootstrap_tfstate.py --no-publish --backend-config-file backend.hcl
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Allow running as a plain script: scripts/bootstrap/bootstrap_tfstate.py -> repo root is 2 parents up.
sys.path.append(str(Path(__file__).resolve().parents[2]))

from scripts.bootstrap.azure_utils import (
    AzCliError,
    az_available,
    az_logged_in,
    get_az_account_info,
)
from scripts.bootstrap.config import (
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_ENV_FILE,
    ProvisioningConfig,
    resolve_config,
)
from scripts.bootstrap.credentials import (
    CredentialBundle,
    render_exports,
    render_summary,
    write_backend_config,
    write_credentials_file,
)
from scripts.bootstrap.env_schema import SECRET_KEYS, EnvValidationError, VarsEnum
from scripts.bootstrap.gh_publish import PublishError, publish_backend_variables, publish_credentials, set_secret
from scripts.bootstrap.gh_utils import GhCliError, detect_repo, gh_available, gh_logged_in
from scripts.bootstrap.planner import ProvisioningPlan, build_plan, describe_plan
from scripts.bootstrap.provisioner import ProvisioningError, provision

logger = logging.getLogger("tfstate_bootstrap")


class PrerequisiteError(RuntimeError):
    pass


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Bootstrap Azure storage + service principal for Terraform remote state")

    ap.add_argument("--resource-group", "-g", default=None, help="Resource group (default: tfstate-rg)")
    ap.add_argument(
        "--storage-account",
        default=None,
        help="Storage account name (default: derived from resource group + subscription)",
    )
    ap.add_argument("--container", default=None, help="Blob container for state (default: tfstate)")
    ap.add_argument("--location", "-l", default=None, help="Azure region (default: westeurope)")
    ap.add_argument("--state-key", default=None, help="State blob name for the backend config (default: terraform.tfstate)")

    ap.add_argument("--identity-name", default=None, help="Service principal display name (default: terraform-tfstate-sp)")
    ap.add_argument("--role", default=None, help="Role assigned to the service principal (default: Contributor)")
    ap.add_argument("--scope", default=None, help="Role assignment scope (default: /subscriptions/<id>)")
    ap.add_argument("--subscription", default=None, help="Subscription id (default: current az account)")

    ap.add_argument("--repo", default=None, help="GitHub repo in owner/repo form (default: detected)")
    ap.add_argument(
        "--env-file",
        default=None,
        help=f"Dotenv config file (default: {DEFAULT_ENV_FILE} if present)",
    )
    ap.add_argument(
        "--credentials-file",
        default=DEFAULT_CREDENTIALS_FILE,
        help=f"Where to write ARM_* credentials (default: {DEFAULT_CREDENTIALS_FILE})",
    )
    ap.add_argument("--backend-config-file", default=None, help="Optional: write a Terraform backend.hcl here")

    ap.add_argument(
        "--force-recreate",
        action="store_true",
        help="Delete and recreate an existing service principal instead of rotating its secret",
    )
    ap.add_argument("--yes", "-y", action="store_true", help="Confirm --force-recreate without prompting")
    ap.add_argument(
        "--publish",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Set ARM_* GitHub Actions secrets (default: enabled; use --no-publish to skip)",
    )
    ap.add_argument(
        "--publish-backend-vars",
        action="store_true",
        help="Also set TFSTATE_* GitHub Actions variables for the backend config",
    )
    ap.add_argument("--skip-identity", action="store_true", help="Only provision storage")
    ap.add_argument("--skip-storage", action="store_true", help="Only provision the service principal")
    ap.add_argument("--dry-run", action="store_true", help="Print the plan and exit without changing anything")
    ap.add_argument(
        "--interactive",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Prompt for values not set via flags/env/config file instead of using defaults",
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return ap


def _needs_github(config: ProvisioningConfig) -> bool:
    if not config.publish or config.dry_run:
        return False
    return not config.skip_identity or config.publish_backend_vars


def check_prerequisites(config: ProvisioningConfig) -> None:
    if not az_available():
        raise PrerequisiteError("Azure CLI (az) not found. Install it: https://learn.microsoft.com/cli/azure/install-azure-cli")
    if not az_logged_in():
        raise PrerequisiteError("Not logged into Azure. Run: az login")
    if _needs_github(config):
        if not gh_available():
            raise PrerequisiteError("GitHub CLI (gh) not found. Install it or pass --no-publish.")
        if not gh_logged_in():
            raise PrerequisiteError("GitHub CLI is not authenticated. Run: gh auth login (or pass --no-publish)")


def resolve_subscription(config: ProvisioningConfig) -> str:
    # Read-only: an explicit subscription is checked, then passed to each ARM command.
    subscription_id = get_az_account_info(config.subscription_id or None).get("id") or ""
    if not subscription_id:
        raise PrerequisiteError("Could not determine the Azure subscription. Pass --subscription or run: az account set")
    return subscription_id


def backend_settings(plan: ProvisioningPlan) -> dict[VarsEnum, str]:
    return {
        VarsEnum.TFSTATE_RESOURCE_GROUP: plan.resource_group,
        VarsEnum.TFSTATE_STORAGE_ACCOUNT: plan.storage_account,
        VarsEnum.TFSTATE_CONTAINER: plan.container,
        VarsEnum.TFSTATE_KEY: plan.state_key,
    }


def describe_publish(config: ProvisioningConfig, plan: ProvisioningPlan) -> None:
    """Print what would be published. Makes no gh call, so the repo is not detected."""
    repo = config.github_repo or "<origin>"
    if not config.skip_identity:
        for key in SECRET_KEYS:
            set_secret(repo=repo, name=key.value, value="", dry_run=True)
    if config.publish_backend_vars and not config.skip_storage:
        publish_backend_variables(repo, backend_settings(plan), dry_run=True)


def run(config: ProvisioningConfig) -> int:
    check_prerequisites(config)
    subscription_id = resolve_subscription(config)

    plan = build_plan(config, subscription_id)
    print(describe_plan(plan))
    if config.dry_run:
        if config.publish:
            describe_publish(config, plan)
        print("[dry-run] No changes made.")
        return 0

    # Resolve the target repo before creating anything, so a bad repo fails early.
    repo = ""
    if _needs_github(config):
        repo = config.github_repo or detect_repo()
        print(f"🎯 [gh] target repository: {repo}")

    result = provision(plan, force_recreate=config.force_recreate)

    bundle: CredentialBundle | None = None
    if result.service_principal is not None:
        sp = result.service_principal
        bundle = CredentialBundle(
            client_id=sp.client_id,
            client_secret=sp.client_secret,
            subscription_id=subscription_id,
            tenant_id=sp.tenant_id,
        )
        path = write_credentials_file(config.credentials_file, bundle)
        print(f"🔑 [creds] wrote {path} (4 lines, mode 600)")
        print("\n# Terraform environment (secret masked; full values in the credentials file):")
        print(render_exports(bundle, masked=True))
        print(f"# Load with: set -a && . {path} && set +a\n")

    if config.backend_config_file is not None and result.storage_account is not None:
        path = write_backend_config(
            config.backend_config_file,
            resource_group=plan.resource_group,
            storage_account=plan.storage_account,
            container=plan.container,
            key=plan.state_key,
        )
        print(f"📝 [backend] wrote {path} (terraform init -backend-config={path})")

    if repo:
        count = 0
        if bundle is not None:
            count += publish_credentials(repo, bundle)
        if config.publish_backend_vars and not config.skip_storage:
            count += publish_backend_variables(repo, backend_settings(plan))
        print(f"✅ [gh] published {count} item(s) to {repo}")

    storage = result.storage_account
    print("\n[done] Terraform state backend ready.")
    print(
        render_summary(
            bundle,
            resource_group=plan.resource_group if storage else None,
            storage_account=storage.name if storage else None,
            storage_key=storage.access_key if storage else None,
            container=plan.container if storage else None,
        )
    )
    if result.created:
        print(f"  Created: {', '.join(result.created)}")
    if result.reused:
        print(f"  Reused:  {', '.join(result.reused)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.skip_identity and args.skip_storage:
        raise SystemExit("--skip-identity and --skip-storage together leave nothing to do.")

    # All prompting happens here, before any external call.
    try:
        config = resolve_config(args, environ=os.environ, interactive=bool(args.interactive))
    except EnvValidationError as e:
        raise SystemExit(e.format())
    except (EOFError, KeyboardInterrupt):
        raise SystemExit("\nAborted.")

    try:
        return run(config)
    except AzCliError as e:
        raise SystemExit(f"❌ [az] {e}")
    except (PrerequisiteError, ProvisioningError, PublishError, GhCliError, EnvValidationError) as e:
        raise SystemExit(f"❌ [error] {e}")


if __name__ == "__main__":
    raise SystemExit(main())
