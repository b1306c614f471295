"""Resource planner: decide the desired end state from configuration.

Pure functions only; nothing here talks to Azure or GitHub.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum

from scripts.bootstrap.config import ProvisioningConfig


class StepKind(str, Enum):
    IDENTITY = "identity"
    ROLE_ASSIGNMENT = "role_assignment"
    RESOURCE_GROUP = "resource_group"
    STORAGE_ACCOUNT = "storage_account"
    CONTAINER = "container"


@dataclass(frozen=True)
class PlannedStep:
    kind: StepKind
    name: str
    detail: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisioningPlan:
    subscription_id: str
    resource_group: str
    storage_account: str
    container: str
    location: str
    identity_name: str
    role: str
    role_scope: str
    state_key: str
    steps: tuple[PlannedStep, ...]

    def kinds(self) -> list[StepKind]:
        return [s.kind for s in self.steps]


def derive_storage_account_name(resource_group: str, subscription_id: str) -> str:
    """Stable, globally-unlikely-to-collide storage account name.

    e.g. ("tfstate-rg", "<sub>") -> "tfstaterg" + first 8 hex chars of sha1(<sub>)
    """
    base = "".join(c for c in resource_group.lower() if c.isascii() and c.isalnum())[:16] or "tfstate"
    suffix = hashlib.sha1(subscription_id.encode("utf-8")).hexdigest()[:8]
    return f"{base}{suffix}"


def subscription_scope(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


def build_plan(config: ProvisioningConfig, subscription_id: str) -> ProvisioningPlan:
    if not subscription_id:
        raise ValueError("subscription_id is required to build a plan")

    storage_account = config.storage_account or derive_storage_account_name(config.resource_group, subscription_id)
    role_scope = config.role_scope or subscription_scope(subscription_id)

    steps: list[PlannedStep] = []
    if not config.skip_identity:
        steps.append(
            PlannedStep(
                StepKind.IDENTITY,
                config.identity_name,
                {"on_existing": "recreate" if config.force_recreate else "rotate-secret"},
            )
        )
        steps.append(PlannedStep(StepKind.ROLE_ASSIGNMENT, config.role, {"scope": role_scope}))

    if not config.skip_storage:
        steps.append(PlannedStep(StepKind.RESOURCE_GROUP, config.resource_group, {"location": config.location}))
        steps.append(
            PlannedStep(
                StepKind.STORAGE_ACCOUNT,
                storage_account,
                {"resource_group": config.resource_group, "sku": "Standard_LRS"},
            )
        )
        steps.append(PlannedStep(StepKind.CONTAINER, config.container, {"account": storage_account}))

    return ProvisioningPlan(
        subscription_id=subscription_id,
        resource_group=config.resource_group,
        storage_account=storage_account,
        container=config.container,
        location=config.location,
        identity_name=config.identity_name,
        role=config.role,
        role_scope=role_scope,
        state_key=config.state_key,
        steps=tuple(steps),
    )


def describe_plan(plan: ProvisioningPlan) -> str:
    lines = [f"[plan] subscription {plan.subscription_id}"]
    if not plan.steps:
        lines.append("[plan] nothing to do")
    for i, step in enumerate(plan.steps, start=1):
        extra = ", ".join(f"{k}={v}" for k, v in step.detail.items())
        lines.append(f"[plan] {i}. ensure {step.kind.value} '{step.name}'" + (f" ({extra})" if extra else ""))
    return "\n".join(lines)
