from __future__ import annotations

import argparse
from pathlib import Path

import pytest

from scripts.bootstrap.bootstrap_tfstate import build_parser
from scripts.bootstrap.config import resolve_config, validate_names
from scripts.bootstrap.env_schema import EnvValidationError, VarsEnum


def _args(*argv: str) -> argparse.Namespace:
    return build_parser().parse_args(list(argv))


def _never_prompt(label, example):
    raise AssertionError(f"unexpected prompt: {label}")


def test_defaults_when_nothing_is_set() -> None:
    cfg = resolve_config(_args(), environ={}, interactive=False)
    assert cfg.resource_group == "tfstate-rg"
    assert cfg.container == "tfstate"
    assert cfg.location == "westeurope"
    assert cfg.identity_name == "terraform-tfstate-sp"
    assert cfg.role == "Contributor"
    assert cfg.storage_account == ""
    assert cfg.credentials_file == Path(".env.tfstate.secrets")
    assert cfg.publish is True
    assert cfg.force_recreate is False


def test_precedence_flags_over_env_over_file(tmp_path: Path) -> None:
    env_file = tmp_path / "cfg.env"
    env_file.write_text(
        "TFSTATE_RESOURCE_GROUP=from-file\nTFSTATE_CONTAINER=file-container\nAZURE_LOCATION=northeurope\n",
        encoding="utf-8",
    )
    environ = {
        VarsEnum.TFSTATE_RESOURCE_GROUP.value: "from-env",
        VarsEnum.TFSTATE_CONTAINER.value: "env-container",
    }

    cfg = resolve_config(
        _args("--env-file", str(env_file), "--resource-group", "from-flag"),
        environ=environ,
        interactive=False,
    )

    assert cfg.resource_group == "from-flag"
    assert cfg.container == "env-container"
    assert cfg.location == "northeurope"


def test_default_env_file_is_optional_but_explicit_one_is_not(tmp_path: Path) -> None:
    resolve_config(_args(), environ={}, interactive=False)

    with pytest.raises(EnvValidationError) as exc:
        resolve_config(_args("--env-file", str(tmp_path / "missing.env")), environ={}, interactive=False)
    assert "Config file not found" in exc.value.format()


def test_default_env_file_is_picked_up_from_cwd(tmp_path: Path) -> None:
    # isolated_env chdirs into tmp_path
    (tmp_path / ".env.tfstate").write_text("TFSTATE_STORAGE_ACCOUNT=mystate123\n", encoding="utf-8")
    cfg = resolve_config(_args(), environ={}, interactive=False)
    assert cfg.storage_account == "mystate123"


def test_unknown_key_in_env_file_fails(tmp_path: Path) -> None:
    env_file = tmp_path / "cfg.env"
    env_file.write_text("STORAGE_ACCOUNT_NAME=x\n", encoding="utf-8")
    with pytest.raises(EnvValidationError):
        resolve_config(_args("--env-file", str(env_file)), environ={}, interactive=False)


def test_interactive_prompts_only_for_unset_values() -> None:
    asked: list[str] = []

    def prompt(label, example):
        asked.append(label)
        return f"answer-{len(asked)}".lower()

    cfg = resolve_config(
        _args("--resource-group", "rg-flag", "--container", "state"),
        environ={VarsEnum.AZURE_LOCATION.value: "eastus"},
        interactive=True,
        prompt=prompt,
    )

    assert cfg.resource_group == "rg-flag"
    assert cfg.container == "state"
    assert cfg.location == "eastus"
    assert "Resource group for Terraform state" not in asked
    assert "Service principal display name" in asked
    assert cfg.identity_name.startswith("answer-")


def test_interactive_empty_answer_fails() -> None:
    with pytest.raises(EnvValidationError) as exc:
        resolve_config(_args(), environ={}, interactive=True, prompt=lambda label, example: "")
    assert "must be non-empty" in exc.value.format()


def test_force_recreate_requires_yes_when_non_interactive() -> None:
    with pytest.raises(EnvValidationError) as exc:
        resolve_config(_args("--force-recreate"), environ={}, interactive=False)
    assert "--yes" in exc.value.format()

    cfg = resolve_config(_args("--force-recreate", "--yes"), environ={}, interactive=False)
    assert cfg.force_recreate is True


def test_force_recreate_confirmation_declined() -> None:
    with pytest.raises(EnvValidationError) as exc:
        resolve_config(
            _args("--force-recreate", "-g", "rg", "--container", "tfstate", "-l", "westeurope",
                  "--identity-name", "sp", "--role", "Contributor", "--state-key", "t.tfstate"),
            environ={},
            interactive=True,
            prompt=_never_prompt,
            confirm=lambda question, default=False: False,
        )
    assert "declined" in exc.value.format()


def test_force_recreate_confirmation_accepted() -> None:
    cfg = resolve_config(
        _args("--force-recreate", "-g", "rg", "--container", "tfstate", "-l", "westeurope",
              "--identity-name", "sp", "--role", "Contributor", "--state-key", "t.tfstate"),
        environ={},
        interactive=True,
        prompt=_never_prompt,
        confirm=lambda question, default=False: True,
    )
    assert cfg.force_recreate is True


@pytest.mark.parametrize(
    "key, value",
    [
        (VarsEnum.TFSTATE_STORAGE_ACCOUNT, "Has-Upper"),
        (VarsEnum.TFSTATE_STORAGE_ACCOUNT, "ab"),
        (VarsEnum.TFSTATE_STORAGE_ACCOUNT, "a" * 25),
        (VarsEnum.TFSTATE_CONTAINER, "tf--state"),
        (VarsEnum.TFSTATE_CONTAINER, "-tfstate"),
        (VarsEnum.TFSTATE_CONTAINER, "ab"),
        (VarsEnum.TFSTATE_RESOURCE_GROUP, "rg."),
        (VarsEnum.TFSTATE_RESOURCE_GROUP, "rg with space"),
        (VarsEnum.AZURE_SP_SCOPE, "subscriptions/x"),
    ],
)
def test_validate_names_rejects(key: VarsEnum, value: str) -> None:
    with pytest.raises(EnvValidationError):
        validate_names({key.value: value}, context="config")


def test_validate_names_accepts_typical_values() -> None:
    validate_names(
        {
            VarsEnum.TFSTATE_RESOURCE_GROUP.value: "rg-tf_state.prod(1)",
            VarsEnum.TFSTATE_STORAGE_ACCOUNT.value: "tfstate0123abcd",
            VarsEnum.TFSTATE_CONTAINER.value: "tf-state",
            VarsEnum.AZURE_SP_SCOPE.value: "/subscriptions/abc/resourceGroups/rg",
        },
        context="config",
    )
