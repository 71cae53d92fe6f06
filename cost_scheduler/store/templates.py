# =============================================================================
# COST OPTIMIZATION SCHEDULER - ACCOUNT ONBOARDING TEMPLATE
# =============================================================================
"""
CloudFormation template that a managed account deploys to create the
cross-account role the scheduler assumes.
"""

import json
import secrets
import string
from typing import Any, Dict

import yaml


CROSS_ACCOUNT_ROLE_NAME = "NucleusCrossAccountCheckRole"
EXTERNAL_ID_PREFIX = "nucleus-"

SCHEDULER_ACTIONS = [
    "ec2:DescribeInstances",
    "ec2:StartInstances",
    "ec2:StopInstances",
    "rds:DescribeDBInstances",
    "rds:StartDBInstance",
    "rds:StopDBInstance",
    "ecs:ListClusters",
    "ecs:ListServices",
    "ecs:DescribeServices",
    "ecs:UpdateService",
    "autoscaling:DescribeAutoScalingGroups",
    "autoscaling:UpdateAutoScalingGroup",
]


def generate_external_id(length: int = 13) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return EXTERNAL_ID_PREFIX + "".join(secrets.choice(alphabet) for _ in range(length))


def generate_onboarding_template(hub_account_id: str, external_id: str) -> Dict[str, Any]:
    """
    Build the onboarding template.

    Args:
        hub_account_id: Account that runs the scheduler (trusted principal)
        external_id: External id the trust policy requires

    Returns:
        CloudFormation template as a dict
    """
    return {
        "AWSTemplateFormatVersion": "2010-09-09",
        "Description": "Nucleus Platform - Cross Account Role for Cost Optimization Scheduler",
        "Parameters": {
            "HubAccountId": {
                "Type": "String",
                "Description": "The AWS Account ID of the Nucleus Platform Hub",
                "Default": hub_account_id,
            },
            "ExternalId": {
                "Type": "String",
                "Description": "External ID for secure role assumption",
                "Default": external_id,
            },
        },
        "Resources": {
            "NucleusCrossAccountRole": {
                "Type": "AWS::IAM::Role",
                "Properties": {
                    "RoleName": CROSS_ACCOUNT_ROLE_NAME,
                    "AssumeRolePolicyDocument": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Principal": {
                                    "AWS": [{"Fn::Sub": "arn:aws:iam::${HubAccountId}:root"}],
                                },
                                "Action": "sts:AssumeRole",
                                "Condition": {
                                    "StringEquals": {"sts:ExternalId": {"Ref": "ExternalId"}},
                                },
                            }
                        ],
                    },
                    "Policies": [
                        {
                            "PolicyName": "NucleusResourceSchedulerPolicy",
                            "PolicyDocument": {
                                "Version": "2012-10-17",
                                "Statement": [
                                    {
                                        "Effect": "Allow",
                                        "Action": list(SCHEDULER_ACTIONS),
                                        "Resource": "*",
                                    }
                                ],
                            },
                        }
                    ],
                },
            }
        },
        "Outputs": {
            "RoleArn": {
                "Description": "The ARN of the cross-account role",
                "Value": {"Fn::GetAtt": ["NucleusCrossAccountRole", "Arn"]},
            }
        },
    }


def render_template(template: Dict[str, Any], fmt: str = "json") -> str:
    """Serialize a template as JSON or YAML."""
    if fmt == "yaml":
        return yaml.safe_dump(template, sort_keys=False, default_flow_style=False)
    if fmt == "json":
        return json.dumps(template, indent=2)
    raise ValueError(f"Unsupported template format: {fmt}")
