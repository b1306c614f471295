"""Idempotent provisioning of the Terraform state backend and its identity.

Every ensure_* function checks the current state first and only creates what is
missing. Create calls that race with an existing resource ("already exists")
count as success, so the whole flow is safe to re-run. There is no rollback:
after a failure, Azure holds whatever was created up to that point.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from scripts.bootstrap.azure_utils import AzCliError, ErrorKind, run_az_command
from scripts.bootstrap.planner import ProvisioningPlan, StepKind

logger = logging.getLogger("tfstate_bootstrap.provisioner")

# Bounded polling for Entra ID / RBAC eventual consistency.
POLL_ATTEMPTS = 10
POLL_BASE_DELAY = 2.0
POLL_MAX_DELAY = 20.0


class ProvisioningError(RuntimeError):
    pass


@dataclass(frozen=True)
class ServicePrincipal:
    client_id: str
    client_secret: str = field(repr=False)
    tenant_id: str = ""
    display_name: str = ""
    object_id: str = ""
    created: bool = False


@dataclass(frozen=True)
class StorageAccount:
    id: str
    name: str
    access_key: str = field(repr=False, default="")


@dataclass
class ProvisioningResult:
    service_principal: ServicePrincipal | None = None
    storage_account: StorageAccount | None = None
    created: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)


def _backoff(attempt: int) -> float:
    # 2, 3, 4.5, 6.75, ... capped
    return min(POLL_MAX_DELAY, POLL_BASE_DELAY * (1.5 ** (attempt - 1)))


def _subscription_args(subscription: str | None) -> list[str]:
    # Explicit per command; the CLI's default subscription is never changed.
    return ["--subscription", subscription] if subscription else []


# --- identity -----------------------------------------------------------------


def find_service_principal(display_name: str) -> dict | None:
    """Return {appId, id, displayName} for an exact display-name match, or None."""
    res = run_az_command(
        [
            "ad",
            "sp",
            "list",
            "--display-name",
            display_name,
            "--query",
            "[].{appId:appId, id:id, displayName:displayName}",
            "-o",
            "json",
        ],
        verbose=False,
    )
    # --display-name is a prefix filter.
    matches = [sp for sp in (res or []) if isinstance(sp, dict) and sp.get("displayName") == display_name]
    if len(matches) > 1:
        ids = ", ".join(str(m.get("appId")) for m in matches)
        raise ProvisioningError(f"Multiple service principals named '{display_name}' ({ids}); refusing to guess.")
    return matches[0] if matches else None


def _sp_from_output(res: object, *, display_name: str, object_id: str = "", created: bool) -> ServicePrincipal:
    if not isinstance(res, dict):
        raise ProvisioningError(f"Unexpected az output for service principal '{display_name}'")
    sp = ServicePrincipal(
        client_id=str(res.get("appId") or ""),
        client_secret=str(res.get("password") or ""),
        tenant_id=str(res.get("tenant") or ""),
        display_name=str(res.get("displayName") or display_name),
        object_id=object_id,
        created=created,
    )
    missing = [n for n, v in (("appId", sp.client_id), ("password", sp.client_secret), ("tenant", sp.tenant_id)) if not v]
    if missing:
        raise ProvisioningError(f"az output for '{display_name}' is missing: {', '.join(missing)}")
    return sp


def create_service_principal(display_name: str) -> ServicePrincipal:
    print(f"🆕 [sp] creating service principal '{display_name}'")
    res = run_az_command(["ad", "sp", "create-for-rbac", "--name", display_name, "-o", "json"])
    return _sp_from_output(res, display_name=display_name, created=True)


def reset_service_principal_secret(app_id: str, *, display_name: str, object_id: str = "") -> ServicePrincipal:
    # The old secret cannot be read back; resetting is the only way to get a usable one.
    print(f"🔁 [sp] service principal '{display_name}' exists; rotating its secret")
    res = run_az_command(["ad", "sp", "credential", "reset", "--id", app_id, "-o", "json"])
    return _sp_from_output(res, display_name=display_name, object_id=object_id, created=False)


def delete_service_principal(app_id: str, *, display_name: str) -> None:
    print(f"🔥 [sp] deleting app registration '{display_name}' ({app_id})")
    run_az_command(["ad", "app", "delete", "--id", app_id], capture_output=False)


def wait_for_service_principal(app_id: str, *, present: bool = True, attempts: int = POLL_ATTEMPTS) -> str:
    """Poll until the principal is readable (or gone, with present=False).

    Returns the principal object id when waiting for presence.
    """
    for attempt in range(1, attempts + 1):
        res = run_az_command(
            ["ad", "sp", "show", "--id", app_id, "--query", "id", "-o", "tsv"],
            ignore_errors=True,
            verbose=False,
        )
        object_id = str(res or "").strip()
        if present and object_id:
            logger.debug("service principal %s readable after %d attempt(s)", app_id, attempt)
            return object_id
        if not present and not object_id:
            return ""
        if attempt < attempts:
            delay = _backoff(attempt)
            state = "propagate" if present else "disappear"
            print(f"⏳ [sp] waiting {delay:.1f}s for service principal to {state} (attempt {attempt}/{attempts})")
            time.sleep(delay)

    state = "readable" if present else "deleted"
    raise ProvisioningError(f"Service principal {app_id} did not become {state} after {attempts} attempts")


def ensure_service_principal(display_name: str, *, force_recreate: bool = False) -> ServicePrincipal:
    existing = find_service_principal(display_name)

    if existing and force_recreate:
        app_id = str(existing.get("appId") or "")
        delete_service_principal(app_id, display_name=display_name)
        wait_for_service_principal(app_id, present=False)
        existing = None

    if existing:
        return reset_service_principal_secret(
            str(existing.get("appId") or ""),
            display_name=display_name,
            object_id=str(existing.get("id") or ""),
        )

    sp = create_service_principal(display_name)
    object_id = wait_for_service_principal(sp.client_id)
    return ServicePrincipal(
        client_id=sp.client_id,
        client_secret=sp.client_secret,
        tenant_id=sp.tenant_id,
        display_name=sp.display_name,
        object_id=object_id,
        created=True,
    )


def _list_role_assignments(object_id: str, role: str, scope: str, subscription: str | None = None) -> list:
    try:
        res = run_az_command(
            ["role", "assignment", "list", "--assignee", object_id, "--role", role, "--scope", scope, "-o", "json"]
            + _subscription_args(subscription),
            verbose=False,
        )
    except AzCliError as e:
        # A freshly created principal may not be resolvable yet; treat as "no assignment".
        if e.kind in {ErrorKind.PROPAGATION, ErrorKind.NOT_FOUND}:
            return []
        raise
    return res if isinstance(res, list) else []


def ensure_role_assignment(
    *, object_id: str, role: str, scope: str, subscription: str | None = None, attempts: int = POLL_ATTEMPTS
) -> bool:
    """Ensure `role` on `scope` for the principal. Returns True when created."""
    if _list_role_assignments(object_id, role, scope, subscription):
        print(f"✅ [role] '{role}' already assigned on {scope}")
        return False

    for attempt in range(1, attempts + 1):
        try:
            run_az_command(
                [
                    "role",
                    "assignment",
                    "create",
                    "--assignee-object-id",
                    object_id,
                    "--assignee-principal-type",
                    "ServicePrincipal",
                    "--role",
                    role,
                    "--scope",
                    scope,
                    "-o",
                    "none",
                ]
                + _subscription_args(subscription),
                capture_output=False,
            )
            print(f"✅ [role] assigned '{role}' on {scope}")
            return True
        except AzCliError as e:
            if e.kind == ErrorKind.ALREADY_EXISTS:
                print(f"✅ [role] '{role}' already assigned on {scope}")
                return False
            if e.kind == ErrorKind.PROPAGATION and attempt < attempts:
                delay = _backoff(attempt)
                print(f"⏳ [role] principal not visible yet (attempt {attempt}/{attempts}); retrying in {delay:.1f}s")
                time.sleep(delay)
                continue
            raise
    # Unreachable: the last attempt either returns or raises.
    raise ProvisioningError(f"Could not assign role '{role}' on {scope}")


# --- storage ------------------------------------------------------------------


def ensure_resource_group(name: str, location: str, *, subscription: str | None = None) -> bool:
    """Returns True when created."""
    exists = run_az_command(["group", "exists", "--name", name] + _subscription_args(subscription), verbose=False)
    if exists is True or str(exists).strip().lower() == "true":
        print(f"✅ [rg] resource group '{name}' exists")
        return False

    try:
        run_az_command(
            ["group", "create", "--name", name, "--location", location, "-o", "none"] + _subscription_args(subscription),
            capture_output=False,
        )
    except AzCliError as e:
        if e.kind != ErrorKind.ALREADY_EXISTS:
            raise
        print(f"✅ [rg] resource group '{name}' already exists")
        return False
    print(f"🆕 [rg] created resource group '{name}' in {location}")
    return True


def _storage_account_id(name: str, resource_group: str, *, subscription: str | None, ignore_errors: bool) -> str:
    res = run_az_command(
        ["storage", "account", "show", "--name", name, "--resource-group", resource_group, "--query", "id", "-o", "tsv"]
        + _subscription_args(subscription),
        ignore_errors=ignore_errors,
        verbose=False,
    )
    return str(res or "").strip()


def ensure_storage_account(
    name: str, *, resource_group: str, location: str, subscription: str | None = None
) -> tuple[str, bool]:
    """Returns (resource id, created)."""
    account_id = _storage_account_id(name, resource_group, subscription=subscription, ignore_errors=True)
    if account_id:
        print(f"✅ [storage] storage account '{name}' exists")
        return account_id, False

    try:
        res = run_az_command(
            [
                "storage",
                "account",
                "create",
                "--name",
                name,
                "--resource-group",
                resource_group,
                "--location",
                location,
                "--sku",
                "Standard_LRS",
                "--kind",
                "StorageV2",
                "--min-tls-version",
                "TLS1_2",
                "--allow-blob-public-access",
                "false",
                "--query",
                "id",
                "-o",
                "tsv",
            ]
            + _subscription_args(subscription)
        )
    except AzCliError as e:
        if e.kind != ErrorKind.ALREADY_EXISTS:
            raise
        print(f"✅ [storage] storage account '{name}' already exists")
        return _storage_account_id(name, resource_group, subscription=subscription, ignore_errors=False), False

    print(f"🆕 [storage] created storage account '{name}'")
    return str(res or "").strip(), True


def get_storage_key(name: str, resource_group: str, *, subscription: str | None = None) -> str:
    res = run_az_command(
        [
            "storage",
            "account",
            "keys",
            "list",
            "--account-name",
            name,
            "--resource-group",
            resource_group,
            "--query",
            "[0].value",
            "-o",
            "tsv",
        ]
        + _subscription_args(subscription),
        verbose=False,
    )
    key = str(res or "").strip()
    if not key:
        raise ProvisioningError(f"No access key returned for storage account '{name}'")
    return key


def ensure_container(name: str, *, account_name: str, account_key: str) -> bool:
    """Returns True when created."""
    res = run_az_command(
        [
            "storage",
            "container",
            "exists",
            "--name",
            name,
            "--account-name",
            account_name,
            "--account-key",
            account_key,
            "-o",
            "json",
        ],
        verbose=False,
    )
    if isinstance(res, dict) and res.get("exists"):
        print(f"✅ [storage] container '{name}' exists")
        return False

    try:
        res = run_az_command(
            [
                "storage",
                "container",
                "create",
                "--name",
                name,
                "--account-name",
                account_name,
                "--account-key",
                account_key,
                "-o",
                "json",
            ]
        )
    except AzCliError as e:
        if e.kind != ErrorKind.ALREADY_EXISTS:
            raise
        print(f"✅ [storage] container '{name}' already exists")
        return False

    # `container create` reports created=false when the container was already there.
    created = bool(res.get("created")) if isinstance(res, dict) else True
    print(f"{'🆕' if created else '✅'} [storage] container '{name}' {'created' if created else 'exists'}")
    return created


# --- orchestration ------------------------------------------------------------


def provision(plan: ProvisioningPlan, *, force_recreate: bool = False) -> ProvisioningResult:
    """Execute the plan's steps in order."""
    result = ProvisioningResult()

    def _record(label: str, created: bool) -> None:
        (result.created if created else result.reused).append(label)

    for step in plan.steps:
        logger.debug("step %s %s", step.kind.value, step.name)

        if step.kind == StepKind.IDENTITY:
            sp = ensure_service_principal(step.name, force_recreate=force_recreate)
            result.service_principal = sp
            _record(f"identity:{step.name}", sp.created)

        elif step.kind == StepKind.ROLE_ASSIGNMENT:
            sp = result.service_principal
            if sp is None:
                raise ProvisioningError("Role assignment planned without an identity")
            object_id = sp.object_id or wait_for_service_principal(sp.client_id)
            created = ensure_role_assignment(
                object_id=object_id, role=plan.role, scope=plan.role_scope, subscription=plan.subscription_id
            )
            _record(f"role:{plan.role}", created)

        elif step.kind == StepKind.RESOURCE_GROUP:
            created = ensure_resource_group(step.name, plan.location, subscription=plan.subscription_id)
            _record(f"resource_group:{step.name}", created)

        elif step.kind == StepKind.STORAGE_ACCOUNT:
            account_id, created = ensure_storage_account(
                step.name,
                resource_group=plan.resource_group,
                location=plan.location,
                subscription=plan.subscription_id,
            )
            key = get_storage_key(step.name, plan.resource_group, subscription=plan.subscription_id)
            result.storage_account = StorageAccount(id=account_id, name=step.name, access_key=key)
            _record(f"storage_account:{step.name}", created)

        elif step.kind == StepKind.CONTAINER:
            account = result.storage_account
            if account is None:
                raise ProvisioningError("Container planned without a storage account")
            created = ensure_container(step.name, account_name=account.name, account_key=account.access_key)
            _record(f"container:{step.name}", created)

    return result
