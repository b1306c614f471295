from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Allow tests to import `scripts.*` as a package.
repo_root = Path(__file__).parents[2]
sys.path.append(str(repo_root))

from scripts.bootstrap import bootstrap_tfstate, provisioner  # noqa: E402
from scripts.bootstrap.azure_utils import AzCliError  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-00000000aaaa"
TENANT_ID = "11111111-1111-1111-1111-11111111bbbb"

MUTATING_VERBS = {"create", "create-for-rbac", "reset", "delete", "set"}


def _opt(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


class FakeAz:
    """In-memory stand-in for the `az` CLI, dispatching on argv like run_az_command."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.service_principals: dict[str, dict[str, str]] = {}  # displayName -> {appId, id, password}
        self.resource_groups: set[str] = set()
        self.storage_accounts: dict[str, str] = {}  # name -> id
        self.containers: set[tuple[str, str]] = set()  # (account, container)
        self.role_assignments: set[tuple[str, str, str]] = set()  # (object id, role, scope)
        self.sp_invisible_reads = 0  # `ad sp show` misses before a new principal is readable
        self.fail_next: dict[str, str] = {}  # command words -> stderr for the next matching call
        self._seq = 0
        self.subscription_id = SUBSCRIPTION_ID
        self.tenant_id = TENANT_ID

    # -- helpers used by tests --
    def mutating_calls(self) -> list[list[str]]:
        return [c for c in self.calls if any(v in c[:4] for v in MUTATING_VERBS)]

    def add_service_principal(self, name: str, password: str = "old-secret") -> dict[str, str]:
        self._seq += 1
        sp = {"appId": f"app-{self._seq}", "id": f"obj-{self._seq}", "password": password}
        self.service_principals[name] = sp
        return sp

    def _fail(self, key: str, args: list[str]) -> None:
        stderr = self.fail_next.pop(key, None)
        if stderr is not None:
            raise AzCliError(1, ["az"] + args, output="", stderr=stderr)

    def _new_password(self) -> str:
        self._seq += 1
        return f"secret-{self._seq}"

    def __call__(self, args, *, capture_output=True, ignore_errors=False, verbose=True):
        args = list(args)
        self.calls.append(args)
        # e.g. "storage account create", "ad sp credential reset"
        words: list[str] = []
        for a in args:
            if a.startswith("-"):
                break
            words.append(a)
        key = " ".join(words)

        try:
            self._fail(key, args)
            return self._dispatch(args, ignore_errors=ignore_errors)
        except AzCliError:
            if ignore_errors:
                return None
            raise

    def _dispatch(self, args: list[str], *, ignore_errors: bool):
        head = args[:3]

        if args[:2] == ["account", "show"]:
            sub = _opt(args, "--subscription") if "--subscription" in args else self.subscription_id
            return {"id": sub, "tenantId": self.tenant_id}

        if head == ["ad", "sp", "list"]:
            prefix = _opt(args, "--display-name")
            return [
                {"appId": sp["appId"], "id": sp["id"], "displayName": name}
                for name, sp in self.service_principals.items()
                if name.startswith(prefix)
            ]
        if head == ["ad", "sp", "create-for-rbac"]:
            name = _opt(args, "--name")
            sp = self.add_service_principal(name, password=self._new_password())
            return {"appId": sp["appId"], "displayName": name, "password": sp["password"], "tenant": TENANT_ID}
        if args[:4] == ["ad", "sp", "credential", "reset"]:
            app_id = _opt(args, "--id")
            for sp in self.service_principals.values():
                if sp["appId"] == app_id:
                    sp["password"] = self._new_password()
                    return {"appId": app_id, "password": sp["password"], "tenant": TENANT_ID}
            raise AzCliError(1, ["az"] + args, stderr="(Request_ResourceNotFound) not found")
        if head == ["ad", "sp", "show"]:
            app_id = _opt(args, "--id")
            if self.sp_invisible_reads > 0:
                self.sp_invisible_reads -= 1
                raise AzCliError(3, ["az"] + args, stderr="(Request_ResourceNotFound) does not exist")
            for sp in self.service_principals.values():
                if sp["appId"] == app_id:
                    return sp["id"]
            raise AzCliError(3, ["az"] + args, stderr="(Request_ResourceNotFound) does not exist")
        if head == ["ad", "app", "delete"]:
            app_id = _opt(args, "--id")
            self.service_principals = {n: sp for n, sp in self.service_principals.items() if sp["appId"] != app_id}
            return None

        if head == ["role", "assignment", "list"]:
            entry = (_opt(args, "--assignee"), _opt(args, "--role"), _opt(args, "--scope"))
            return [{"id": "/ra/1"}] if entry in self.role_assignments else []
        if head == ["role", "assignment", "create"]:
            entry = (_opt(args, "--assignee-object-id"), _opt(args, "--role"), _opt(args, "--scope"))
            if entry in self.role_assignments:
                raise AzCliError(1, ["az"] + args, stderr="(RoleAssignmentExists) The role assignment already exists.")
            self.role_assignments.add(entry)
            return None

        if head == ["group", "exists", "--name"]:
            return _opt(args, "--name") in self.resource_groups
        if head == ["group", "create", "--name"]:
            self.resource_groups.add(_opt(args, "--name"))
            return None

        if args[:3] == ["storage", "account", "show"]:
            name = _opt(args, "--name")
            if name not in self.storage_accounts:
                raise AzCliError(3, ["az"] + args, stderr=f"(ResourceNotFound) The Resource '{name}' was not found.")
            return self.storage_accounts[name]
        if args[:3] == ["storage", "account", "create"]:
            name = _opt(args, "--name")
            rg = _opt(args, "--resource-group")
            if name in self.storage_accounts:
                raise AzCliError(1, ["az"] + args, stderr="(StorageAccountAlreadyExists) already exists")
            self.storage_accounts[name] = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{rg}/providers/Microsoft.Storage/storageAccounts/{name}"
            return self.storage_accounts[name]
        if args[:4] == ["storage", "account", "keys", "list"]:
            return f"key-for-{_opt(args, '--account-name')}"

        if args[:3] == ["storage", "container", "exists"]:
            return {"exists": (_opt(args, "--account-name"), _opt(args, "--name")) in self.containers}
        if args[:3] == ["storage", "container", "create"]:
            entry = (_opt(args, "--account-name"), _opt(args, "--name"))
            created = entry not in self.containers
            self.containers.add(entry)
            return {"created": created}

        raise AssertionError(f"unexpected az call: {args}")


@pytest.fixture
def fake_az(monkeypatch) -> FakeAz:
    fake = FakeAz()
    monkeypatch.setattr(provisioner, "run_az_command", fake)
    monkeypatch.setattr(provisioner.time, "sleep", lambda _s: None)

    monkeypatch.setattr(bootstrap_tfstate, "az_available", lambda: True)
    monkeypatch.setattr(bootstrap_tfstate, "az_logged_in", lambda: True)
    monkeypatch.setattr(
        bootstrap_tfstate,
        "get_az_account_info",
        lambda subscription_id=None: fake(
            ["account", "show", "--output", "json"] + (["--subscription", subscription_id] if subscription_id else [])
        ),
    )
    return fake


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    # Keep the developer's/CI's AZURE_*, TFSTATE_*, GITHUB_REPOSITORY and .env.tfstate out of tests.
    from scripts.bootstrap.env_schema import VarsEnum

    for key in VarsEnum:
        monkeypatch.delenv(key.value, raising=False)
    monkeypatch.chdir(tmp_path)
