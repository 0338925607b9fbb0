import aws_cdk as cdk
import pytest

from stacks.config import (
    DEFAULT_REGION,
    StackSettings,
    load_settings,
    resolve_environment,
    resolve_settings,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in StackSettings.model_fields:
        monkeypatch.delenv("ADCASE_" + name.upper(), raising=False)
    for name in ("CDK_DEFAULT_ACCOUNT", "CDK_DEFAULT_REGION"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = resolve_settings()

    assert s.vpc_name == "AdcaseVpc"
    assert s.listener_port == 80
    assert s.container_port == 3000
    assert s.container_memory_mib == 2048
    assert s.task_cpu == "256"
    assert s.db_master_username == "CaseAdmin"
    assert s.db_exclude_characters == '"@/:'
    assert s.db_instance_type == "r5.large"


def test_env_overrides_default(monkeypatch):
    monkeypatch.setenv("ADCASE_CONTAINER_PORT", "8080")
    monkeypatch.setenv("ADCASE_DATA_TRACE_ENABLED", "false")

    s = resolve_settings()

    assert s.container_port == 8080
    assert s.data_trace_enabled is False


def test_context_overrides_env(monkeypatch):
    monkeypatch.setenv("ADCASE_VPC_NAME", "FromEnv")

    assert resolve_settings({"vpc_name": "FromContext"}).vpc_name == "FromContext"


def test_numeric_cpu_is_normalised():
    assert resolve_settings({"task_cpu": 512}).task_cpu == "512"


@pytest.mark.parametrize(
    "context, field",
    [
        ({"container_port": 70000}, "container_port"),
        ({"listener_port": 0}, "listener_port"),
        ({"task_cpu": "300"}, "task_cpu"),
        ({"desired_count": 0}, "desired_count"),
        ({"health_check_path": "healthz"}, "health_check_path"),
    ],
)
def test_invalid_values_name_the_field(context, field):
    with pytest.raises(ValueError, match=field):
        resolve_settings(context)


def test_load_settings_reads_app_context():
    app = cdk.App(context={"vpc_name": "OtherVpc", "desired_count": "3"})

    s = load_settings(app)

    assert s.vpc_name == "OtherVpc"
    assert s.desired_count == 3


def test_environment_from_context():
    app = cdk.App(context={"account": "111111111111", "region": "eu-west-1"})

    assert resolve_environment(app) == {"account": "111111111111", "region": "eu-west-1"}


def test_environment_falls_back(monkeypatch):
    monkeypatch.setenv("CDK_DEFAULT_ACCOUNT", "222222222222")

    env = resolve_environment(cdk.App())

    assert env == {"account": "222222222222", "region": DEFAULT_REGION}
