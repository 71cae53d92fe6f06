"""
Tests for the onboarding template.
"""

import json

import pytest
import yaml

from cost_scheduler.store.templates import (
    CROSS_ACCOUNT_ROLE_NAME,
    generate_external_id,
    generate_onboarding_template,
    render_template,
)


def test_external_id_format():
    external_id = generate_external_id()
    assert external_id.startswith("nucleus-")
    assert len(external_id) == len("nucleus-") + 13
    assert generate_external_id() != external_id


def test_template_trusts_hub_account():
    template = generate_onboarding_template("044656767899", "nucleus-xyz")

    assert template["Parameters"]["HubAccountId"]["Default"] == "044656767899"
    assert template["Parameters"]["ExternalId"]["Default"] == "nucleus-xyz"

    role = template["Resources"]["NucleusCrossAccountRole"]["Properties"]
    assert role["RoleName"] == CROSS_ACCOUNT_ROLE_NAME
    statement = role["AssumeRolePolicyDocument"]["Statement"][0]
    assert statement["Condition"]["StringEquals"]["sts:ExternalId"] == {"Ref": "ExternalId"}

    actions = role["Policies"][0]["PolicyDocument"]["Statement"][0]["Action"]
    assert "ec2:StopInstances" in actions
    assert "ecs:UpdateService" in actions
    assert "rds:StartDBInstance" in actions


def test_render_formats():
    template = generate_onboarding_template("1", "nucleus-a")
    assert json.loads(render_template(template)) == template
    assert yaml.safe_load(render_template(template, "yaml")) == template
    with pytest.raises(ValueError):
        render_template(template, "xml")
