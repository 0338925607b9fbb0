"""
Structural checks over a synthesized CloudFormation template.

The template is the plain dict produced by ``Template.from_stack(...).to_json()``
or loaded from ``cdk.out/<stack>.template.json``.  Each check returns a
CheckResult; malformed templates produce failed results, never exceptions.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Literal, Optional, Set

from pydantic import BaseModel

from stacks.adcase_stack import EXECUTION_ROLE_ACTIONS, TASK_ROLE_ACTIONS

OPEN_CIDR = "0.0.0.0/0"


class CheckResult(BaseModel):
    name: str
    passed: bool
    severity: Literal["error", "warning"] = "error"
    detail: str = ""


# -- template helpers --

def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _all_resources(template: Any) -> Dict[str, Any]:
    return _dict(_dict(template).get("Resources"))


def _resources(template: Any, type_name: str) -> Dict[str, Dict[str, Any]]:
    return {
        logical_id: res
        for logical_id, res in _all_resources(template).items()
        if isinstance(res, dict) and res.get("Type") == type_name
    }


def _props(resource: Any) -> Dict[str, Any]:
    return _dict(_dict(resource).get("Properties"))


def _ref_id(value: Any) -> Optional[str]:
    """Logical id behind a Ref / Fn::GetAtt, or None."""
    if not isinstance(value, dict):
        return None
    ref = value.get("Ref")
    if isinstance(ref, str):
        return ref
    att = value.get("Fn::GetAtt")
    if isinstance(att, list) and att and isinstance(att[0], str):
        return att[0]
    if isinstance(att, str):
        return att.split(".", 1)[0]
    return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _role_actions(template: Dict[str, Any], role_id: str) -> Set[str]:
    actions: Set[str] = set()

    def collect(document: Any) -> None:
        if not isinstance(document, dict):
            return
        for stmt in _as_list(document.get("Statement")):
            if isinstance(stmt, dict) and stmt.get("Effect", "Allow") == "Allow":
                actions.update(a for a in _as_list(stmt.get("Action")) if isinstance(a, str))

    for policy in _resources(template, "AWS::IAM::Policy").values():
        props = _props(policy)
        if role_id in {_ref_id(r) for r in _as_list(props.get("Roles"))}:
            collect(props.get("PolicyDocument"))

    role = _all_resources(template).get(role_id)
    for inline in _as_list(_props(role).get("Policies")):
        if isinstance(inline, dict):
            collect(inline.get("PolicyDocument"))

    return actions


def _single_task_definition(template: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    task_defs = _resources(template, "AWS::ECS::TaskDefinition")
    if len(task_defs) != 1:
        return None
    return next(iter(task_defs.values()))


def _fmt(items: Iterable[str]) -> str:
    return ", ".join(sorted(items)) or "<none>"


def _listeners_of(template: Any, lb_type: str) -> Dict[str, Dict[str, Any]]:
    """Listeners whose load balancer has the given Type (application/network)."""
    balancers = _resources(template, "AWS::ElasticLoadBalancingV2::LoadBalancer")
    return {
        lid: listener
        for lid, listener in _resources(template, "AWS::ElasticLoadBalancingV2::Listener").items()
        if _props(balancers.get(_ref_id(_props(listener).get("LoadBalancerArn")) or "")).get(
            "Type", "application") == lb_type
    }


def _forwarded_target_groups(listener: Any) -> Set[str]:
    forwarded: Set[str] = set()
    for action in _as_list(_props(listener).get("DefaultActions")):
        if not isinstance(action, dict) or action.get("Type") != "forward":
            continue
        tg = _ref_id(action.get("TargetGroupArn"))
        if tg:
            forwarded.add(tg)
        for entry in _as_list(_dict(action.get("ForwardConfig")).get("TargetGroups")):
            tg = _ref_id(_dict(entry).get("TargetGroupArn"))
            if tg:
                forwarded.add(tg)
    return forwarded


# -- checks --

def check_listener_routes_to_service(template: Dict[str, Any]) -> CheckResult:
    name = "listener_routes_to_service"
    listeners = _listeners_of(template, "application")
    if len(listeners) != 1:
        return CheckResult(name=name, passed=False,
                           detail=f"expected 1 application listener, found {len(listeners)}")

    forwarded = _forwarded_target_groups(next(iter(listeners.values())))
    if len(forwarded) != 1:
        return CheckResult(name=name, passed=False,
                           detail=f"listener forwards to {len(forwarded)} target groups")

    tg_id = forwarded.pop()
    target_group = _resources(template, "AWS::ElasticLoadBalancingV2::TargetGroup").get(tg_id)
    if target_group is None:
        return CheckResult(name=name, passed=False,
                           detail=f"target group {tg_id} is not declared")
    if _props(target_group).get("TargetType") != "ip":
        return CheckResult(name=name, passed=False,
                           detail=f"target group {tg_id} is not ip-typed")

    task_defs = _resources(template, "AWS::ECS::TaskDefinition")
    for service_id, service in _resources(template, "AWS::ECS::Service").items():
        props = _props(service)
        for lb in _as_list(props.get("LoadBalancers")):
            if not isinstance(lb, dict) or _ref_id(lb.get("TargetGroupArn")) != tg_id:
                continue
            port = lb.get("ContainerPort")
            task_def = task_defs.get(_ref_id(props.get("TaskDefinition")) or "")
            if task_def is None or not isinstance(port, int):
                continue
            for container in _as_list(_props(task_def).get("ContainerDefinitions")):
                if not isinstance(container, dict) or container.get("Name") != lb.get("ContainerName"):
                    continue
                ports = [
                    m.get("ContainerPort")
                    for m in _as_list(container.get("PortMappings"))
                    if isinstance(m, dict)
                ]
                if port in ports:
                    return CheckResult(
                        name=name, passed=True,
                        detail=(f"{tg_id} -> {service_id} "
                                f"{lb.get('ContainerName')}:{lb.get('ContainerPort')}"),
                    )

    return CheckResult(name=name, passed=False,
                       detail=f"no ECS service registers a mapped container port in {tg_id}")


def _check_role(template: Dict[str, Any], name: str, role_key: str,
                expected: Iterable[str]) -> CheckResult:
    task_def = _single_task_definition(template)
    if task_def is None:
        return CheckResult(name=name, passed=False,
                           detail="expected exactly 1 ECS task definition")
    role_id = _ref_id(_props(task_def).get(role_key))
    if role_id is None:
        return CheckResult(name=name, passed=False, detail=f"task definition has no {role_key}")

    granted = _role_actions(template, role_id)
    wanted = set(expected)
    if granted == wanted:
        return CheckResult(name=name, passed=True, detail=_fmt(granted))

    parts = []
    if wanted - granted:
        parts.append(f"missing: {_fmt(wanted - granted)}")
    if granted - wanted:
        parts.append(f"unexpected: {_fmt(granted - wanted)}")
    return CheckResult(name=name, passed=False, detail="; ".join(parts))


def check_execution_role_actions(template: Dict[str, Any],
                                 expected: Iterable[str] = EXECUTION_ROLE_ACTIONS) -> CheckResult:
    return _check_role(template, "execution_role_actions", "ExecutionRoleArn", expected)


def check_task_role_actions(template: Dict[str, Any],
                            expected: Iterable[str] = TASK_ROLE_ACTIONS) -> CheckResult:
    return _check_role(template, "task_role_actions", "TaskRoleArn", expected)


def check_users_methods(template: Dict[str, Any]) -> CheckResult:
    name = "users_methods"
    users_ids = {
        rid for rid, res in _resources(template, "AWS::ApiGateway::Resource").items()
        if _props(res).get("PathPart") == "users"
    }
    if len(users_ids) != 1:
        return CheckResult(name=name, passed=False,
                           detail=f"expected 1 users resource, found {len(users_ids)}")
    users_id = users_ids.pop()

    api_ids = set(_resources(template, "AWS::ApiGateway::RestApi"))
    users_methods: Set[str] = set()
    root_methods: Set[str] = set()
    for method in _resources(template, "AWS::ApiGateway::Method").values():
        props = _props(method)
        resource = props.get("ResourceId")
        http_method = props.get("HttpMethod")
        if not isinstance(http_method, str):
            continue
        if _ref_id(resource) == users_id:
            users_methods.add(http_method)
        elif (isinstance(resource, dict) and "Fn::GetAtt" in resource
              and _ref_id(resource) in api_ids):
            root_methods.add(http_method)

    if users_methods != {"GET", "POST"}:
        return CheckResult(name=name, passed=False,
                           detail=f"/users exposes {_fmt(users_methods)}")
    if "ANY" not in root_methods:
        return CheckResult(name=name, passed=False, detail="root resource has no ANY method")
    return CheckResult(name=name, passed=True, detail="/ ANY; /users GET, POST")


def _link_reaches_alb(template: Any, link: Any) -> bool:
    """VPC link -> NLB -> listener -> alb-typed target group -> application LB."""
    balancers = _resources(template, "AWS::ElasticLoadBalancingV2::LoadBalancer")
    target_groups = _resources(template, "AWS::ElasticLoadBalancingV2::TargetGroup")
    nlb_ids = {_ref_id(arn) for arn in _as_list(_props(link).get("TargetArns"))}

    for listener in _listeners_of(template, "network").values():
        if _ref_id(_props(listener).get("LoadBalancerArn")) not in nlb_ids:
            continue
        for tg_id in _forwarded_target_groups(listener):
            tg = _props(target_groups.get(tg_id))
            if tg.get("TargetType") != "alb":
                continue
            for target in _as_list(tg.get("Targets")):
                alb = balancers.get(_ref_id(_dict(target).get("Id")) or "")
                if alb is not None and _props(alb).get("Type", "application") == "application":
                    return True
    return False


def check_gateway_private_integration(template: Dict[str, Any]) -> CheckResult:
    name = "gateway_private_integration"
    vpc_links = _resources(template, "AWS::ApiGateway::VpcLink")
    if not vpc_links:
        return CheckResult(name=name, passed=False, detail="no VPC link declared")

    methods = _resources(template, "AWS::ApiGateway::Method")
    if not methods:
        return CheckResult(name=name, passed=False, detail="no gateway methods declared")

    unproxied = []
    used_links: Set[str] = set()
    for method in methods.values():
        props = _props(method)
        integration = _dict(props.get("Integration"))
        link_id = _ref_id(integration.get("ConnectionId"))
        if (integration.get("Type") == "HTTP_PROXY"
                and integration.get("ConnectionType") == "VPC_LINK"
                and link_id in vpc_links):
            used_links.add(link_id)
        else:
            unproxied.append(f"{props.get('HttpMethod')} ({integration.get('Type')})")

    if unproxied:
        return CheckResult(name=name, passed=False,
                           detail=f"methods not proxied through the VPC link: {_fmt(unproxied)}")

    for link_id in used_links:
        if not _link_reaches_alb(template, vpc_links[link_id]):
            return CheckResult(name=name, passed=False,
                               detail=f"VPC link {link_id} does not reach the application load balancer")

    return CheckResult(name=name, passed=True,
                       detail=f"{len(methods)} methods via {_fmt(used_links)}")


def _port_label(port: Any) -> str:
    # tokens such as Fn::GetAtt [Cluster, Port] resolve to the default port at deploy time
    if isinstance(port, int):
        return f"port {port}"
    return "default port"


def check_database_open_ingress(template: Dict[str, Any]) -> CheckResult:
    name = "database_open_ingress"
    sg_ids: Set[str] = set()
    for cluster in _resources(template, "AWS::DocDB::DBCluster").values():
        for sg in _as_list(_props(cluster).get("VpcSecurityGroupIds")):
            sg_id = _ref_id(sg)
            if sg_id:
                sg_ids.add(sg_id)

    open_rules = []
    for sg_id, sg in _resources(template, "AWS::EC2::SecurityGroup").items():
        if sg_id not in sg_ids:
            continue
        for rule in _as_list(_props(sg).get("SecurityGroupIngress")):
            if isinstance(rule, dict) and rule.get("CidrIp") == OPEN_CIDR:
                open_rules.append(rule)
    for ingress in _resources(template, "AWS::EC2::SecurityGroupIngress").values():
        props = _props(ingress)
        if _ref_id(props.get("GroupId")) in sg_ids and props.get("CidrIp") == OPEN_CIDR:
            open_rules.append(props)

    if open_rules:
        ports = _fmt({_port_label(r.get("FromPort")) for r in open_rules})
        return CheckResult(name=name, passed=False, severity="warning",
                           detail=f"document database admits {OPEN_CIDR} on {ports}")
    return CheckResult(name=name, passed=True, severity="warning",
                       detail="no open ingress on the document database")


ALL_CHECKS = (
    check_listener_routes_to_service,
    check_execution_role_actions,
    check_task_role_actions,
    check_users_methods,
    check_gateway_private_integration,
    check_database_open_ingress,
)


def run_checks(template: Dict[str, Any]) -> List[CheckResult]:
    return [check(template) for check in ALL_CHECKS]


def failed_errors(results: Iterable[CheckResult]) -> List[CheckResult]:
    return [r for r in results if not r.passed and r.severity == "error"]
