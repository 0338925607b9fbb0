#!/usr/bin/env python3
"""
AWS CDK entry point.

Provisions (inside the existing AdcaseVpc):
  - Public Application Load Balancer + IP target group
  - ECR repository for the API image
  - ECS cluster (EC2 capacity) running the API service
  - DocumentDB cluster + instance
  - REST API Gateway proxied to the service through a VPC link

Settings come from CDK context first, then ADCASE_* environment variables,
then the defaults in stacks/config.py.
"""

import logging

import aws_cdk as cdk

from stacks.adcase_stack import AdcaseStack
from stacks.config import load_settings, resolve_environment

STACK_NAME = "AdcaseInfraStack"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("adcase.app")

app = cdk.App()

settings = load_settings(app)
env = resolve_environment(app)
logger.info("Synthesizing %s  account=%s  region=%s  vpc=%s",
            STACK_NAME, env["account"] or "<unset>", env["region"], settings.vpc_name)

AdcaseStack(
    app,
    STACK_NAME,
    settings=settings,
    env=cdk.Environment(account=env["account"], region=env["region"]),
)

app.synth()
