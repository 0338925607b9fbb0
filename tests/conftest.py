import copy

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from stacks.adcase_stack import AdcaseStack
from stacks.config import StackSettings

# concrete env so Vpc.from_lookup resolves to the CDK dummy VPC
TEST_ENV = cdk.Environment(account="123456789012", region="us-east-1")


def synth(settings: StackSettings = None, stack_id: str = "TestAdcaseStack") -> AdcaseStack:
    app = cdk.App()
    return AdcaseStack(app, stack_id, settings=settings or StackSettings(), env=TEST_ENV)


@pytest.fixture
def synth_stack():
    return synth


@pytest.fixture(scope="session")
def stack():
    return synth()


@pytest.fixture(scope="session")
def template(stack):
    return Template.from_stack(stack)


@pytest.fixture(scope="session")
def _template_json(template):
    return template.to_json()


@pytest.fixture
def template_json(_template_json):
    """A private copy the test may mutate."""
    return copy.deepcopy(_template_json)
