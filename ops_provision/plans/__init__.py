"""
Plan registry.

Each plan module exposes ``PLAN_NAME``, ``DESCRIPTION`` and
``build_plan(config)``.
"""

from ops_provision.config import ProvisionConfig
from ops_provision.exceptions import PlanNotFoundError
from ops_provision.plan import ProvisioningPlan
from ops_provision.plans import marzban, reality

PLANS = {
    marzban.PLAN_NAME: marzban,
    reality.PLAN_NAME: reality,
}


def available_plans() -> list[str]:
    return sorted(PLANS)


def describe_plan(name: str) -> str:
    return _module(name).DESCRIPTION


def get_plan(name: str, config: ProvisionConfig) -> ProvisioningPlan:
    """
    Build the plan registered as ``name``.

    Raises:
        PlanNotFoundError: If no plan has that name
        ValidationError: If ``config`` is not acceptable to the plan
    """
    return _module(name).build_plan(config)


def _module(name: str):
    if name not in PLANS:
        raise PlanNotFoundError(name, available_plans())
    return PLANS[name]
