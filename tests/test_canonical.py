from __future__ import annotations

from dataclasses import replace

import pytest

from deploy_orchestrator.canonical import plan_fingerprint, to_canonical_json
from deploy_orchestrator.constants import DeploymentConstants
from deploy_orchestrator.models import Address, DeploymentPlan, Lookup, PostDeployCall, Reference, UnitDescriptor
from deploy_orchestrator.plans import velodrome_v2


def test_canonical_json_sorts_keys_and_tags_placeholders() -> None:
    payload = {"b": Reference("voter"), "a": [Address("0x01"), Lookup("f", "getPool", (1,))]}
    assert to_canonical_json(payload) == (
        '{"a":[{"$address":"0x01"},{"$lookup":"f","args":[1],"method":"getPool"}],"b":{"$ref":"voter"}}'
    )


def test_large_integers_are_carried_as_strings() -> None:
    assert to_canonical_json({"amount": 10**18, "small": 5}) == '{"amount":"1000000000000000000","small":5}'


def test_unknown_types_are_rejected() -> None:
    with pytest.raises(TypeError):
        to_canonical_json({"value": object()})


def test_fingerprint_is_stable_and_sensitive_to_changes(constants: DeploymentConstants) -> None:
    plan = velodrome_v2(constants)
    assert plan_fingerprint(plan) == plan_fingerprint(velodrome_v2(constants))

    router = plan.unit("router")
    changed_units = tuple(
        replace(unit, post_deploy_calls=(*unit.post_deploy_calls, PostDeployCall("pause"))) if unit is router else unit
        for unit in plan.units
    )
    assert plan_fingerprint(replace(plan, units=changed_units)) != plan_fingerprint(plan)


def test_literal_string_differs_from_reference_to_same_name() -> None:
    literal = DeploymentPlan("p", "out", (UnitDescriptor("a", "A", constructor_args=("voter",)),))
    referenced = DeploymentPlan("p", "out", (UnitDescriptor("a", "A", constructor_args=(Reference("voter"),)),))
    assert plan_fingerprint(literal) != plan_fingerprint(referenced)
