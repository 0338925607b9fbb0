"""
AWS CDK stack: ALB + ECS (EC2) + DocumentDB + API Gateway.

Resources:
  - Existing VPC (looked up by name)
  - Application Load Balancer (public) with its security group
  - IP target group + HTTP listener forwarding to it
  - ECR repository for the API image
  - ECS cluster with EC2 capacity, task definition and EC2 service
  - IAM statements for the task execution role and task role
  - DocumentDB cluster + one extra instance
  - Internal NLB + VPC link in front of the ALB listener
  - REST API gateway (/ and /users) proxied through the VPC link
"""

from typing import List, Optional

from constructs import Construct
import aws_cdk as cdk
from aws_cdk import (
    Stack,
    Duration,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_elasticloadbalancingv2_targets as elbv2_targets,
    aws_iam as iam,
    aws_docdb as docdb,
    aws_apigateway as apigateway,
    aws_logs as logs,
)

from stacks.config import StackSettings

EXECUTION_ROLE_ACTIONS = (
    "ecr:GetAuthorizationToken",
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
    "logs:CreateLogStream",
    "logs:PutLogEvents",
)

TASK_ROLE_ACTIONS = ("documentdb:*",)

DOCDB_DEFAULT_PORT = 27017


class AdcaseStack(Stack):

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        settings: Optional[StackSettings] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)
        settings = settings or StackSettings()
        self.settings = settings

        # ---------------------------------------------------------------
        # VPC (pre-existing)
        # ---------------------------------------------------------------
        vpc = ec2.Vpc.from_lookup(self, "AdcaseVpc", vpc_name=settings.vpc_name)

        # ---------------------------------------------------------------
        # Load balancer + security group
        # ---------------------------------------------------------------
        lb_sg = ec2.SecurityGroup(self, "AdcaseLoadBalancerSG", vpc=vpc)
        lb_sg.add_ingress_rule(
            ec2.Peer.any_ipv4(),
            ec2.Port.tcp(settings.listener_port),
            f"Allow from anyone on port {settings.listener_port}",
        )

        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self, "AdcaseECSALB",
            vpc=vpc,
            security_group=lb_sg,
            internet_facing=True,
        )

        # ---------------------------------------------------------------
        # Target group + listener
        # ---------------------------------------------------------------
        self.target_group = elbv2.ApplicationTargetGroup(
            self, "AdcaseLoadBalancerListenerTargetGroupECS",
            vpc=vpc,
            target_type=elbv2.TargetType.IP,
            protocol=elbv2.ApplicationProtocol.HTTP,
            port=80,
            target_group_name=settings.target_group_name,
        )
        self.target_group.configure_health_check(
            path=settings.health_check_path,
            interval=Duration.seconds(30),
            healthy_threshold_count=2,
            unhealthy_threshold_count=3,
        )

        self.listener = elbv2.ApplicationListener(
            self, "AdcaseECSApplicationListener",
            load_balancer=self.load_balancer,
            protocol=elbv2.ApplicationProtocol.HTTP,
            port=settings.listener_port,
            default_action=elbv2.ListenerAction.forward([self.target_group]),
        )

        # ---------------------------------------------------------------
        # ECR
        # ---------------------------------------------------------------
        self.repository = ecr.Repository(
            self, "AdcaseRepository",
            repository_name=settings.repository_name,
        )

        # ---------------------------------------------------------------
        # ECS cluster (EC2 capacity)
        # ---------------------------------------------------------------
        self.cluster = ecs.Cluster(
            self, "AdcaseECSCluster",
            vpc=vpc,
            cluster_name=settings.cluster_name,
        )
        self.cluster.add_capacity(
            "AdcaseECSCapacity",
            instance_type=ec2.InstanceType(settings.capacity_instance_type),
            desired_capacity=settings.capacity_desired,
        )

        ecs_sg = ec2.SecurityGroup(
            self, "AdcaseECSSecurityGroup",
            vpc=vpc,
            security_group_name=settings.ecs_security_group_name,
        )

        # ---------------------------------------------------------------
        # Task definition + IAM
        # ---------------------------------------------------------------
        # awsvpc gives every task its own ENI, which IP targets require
        task_definition = ecs.TaskDefinition(
            self, "ApiTaskDefinition",
            compatibility=ecs.Compatibility.EC2,
            network_mode=ecs.NetworkMode.AWS_VPC,
            cpu=settings.task_cpu,
        )
        task_definition.add_to_execution_role_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                resources=["*"],
                actions=list(EXECUTION_ROLE_ACTIONS),
            )
        )
        task_definition.add_to_task_role_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                resources=["*"],
                actions=list(TASK_ROLE_ACTIONS),
            )
        )
        self.task_definition = task_definition

        # plain registry reference: pull rights come from the statement above
        container = task_definition.add_container(
            "AdcaseECSContainer",
            container_name=settings.container_name,
            image=ecs.ContainerImage.from_registry(
                self.repository.repository_uri_for_tag(settings.image_tag)
            ),
            memory_limit_mib=settings.container_memory_mib,
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix=settings.repository_name,
                log_retention=logs.RetentionDays.TWO_WEEKS,
            ),
        )
        container.add_port_mappings(
            ecs.PortMapping(
                container_port=settings.container_port,
                protocol=ecs.Protocol.TCP,
            )
        )

        # ---------------------------------------------------------------
        # ECS service -> target group
        # ---------------------------------------------------------------
        self.service = ecs.Ec2Service(
            self, "AdcaseECSService",
            cluster=self.cluster,
            task_definition=task_definition,
            desired_count=settings.desired_count,
            security_groups=[ecs_sg],
        )
        self.target_group.add_target(
            self.service.load_balancer_target(
                container_name=settings.container_name,
                container_port=settings.container_port,
            )
        )

        # ---------------------------------------------------------------
        # DocumentDB
        # ---------------------------------------------------------------
        db_instance_type = ec2.InstanceType(settings.db_instance_type)

        self.db_cluster = docdb.DatabaseCluster(
            self, "AdcaseDocDBCluster",
            master_user=docdb.Login(
                username=settings.db_master_username,
                exclude_characters=settings.db_exclude_characters,
            ),
            instance_type=db_instance_type,
            instances=settings.db_cluster_instances,
            port=DOCDB_DEFAULT_PORT,
            vpc=vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )
        # wide open on purpose; flagged by database_open_ingress
        self.db_cluster.connections.allow_default_port_from_any_ipv4(
            "Allow document database access from any IPv4 address"
        )

        self.db_instance = docdb.DatabaseInstance(
            self, "AdcaseDocDBInstance",
            cluster=self.db_cluster,
            instance_type=db_instance_type,
        )

        # ---------------------------------------------------------------
        # VPC link: internal NLB -> ALB listener
        # ---------------------------------------------------------------
        # REST API VPC links can only target network load balancers
        self.link_load_balancer = elbv2.NetworkLoadBalancer(
            self, "AdcaseVpcLinkNLB",
            vpc=vpc,
            internet_facing=False,
            vpc_subnets=ec2.SubnetSelection(subnets=link_subnets(vpc)),
        )
        link_listener = self.link_load_balancer.add_listener(
            "AdcaseVpcLinkListener",
            port=settings.listener_port,
        )
        link_listener.add_targets(
            "AdcaseAlbTarget",
            port=settings.listener_port,
            targets=[elbv2_targets.AlbListenerTarget(self.listener)],
            # alb-typed target groups only accept HTTP(S) health checks
            health_check=elbv2.HealthCheck(
                protocol=elbv2.Protocol.HTTP,
                path=settings.health_check_path,
            ),
        )

        self.vpc_link = apigateway.VpcLink(
            self, "HttpVpcLink",
            vpc_link_name=settings.vpc_link_name,
            targets=[self.link_load_balancer],
        )

        # ---------------------------------------------------------------
        # API Gateway
        # ---------------------------------------------------------------
        self.api = apigateway.RestApi(
            self, "AdcaseApi",
            rest_api_name=settings.api_name,
            deploy_options=apigateway.StageOptions(
                data_trace_enabled=settings.data_trace_enabled,
            ),
        )
        self.api.root.add_method("ANY", self._proxy("/", "ANY"))

        users = self.api.root.add_resource("users")
        users.add_method("GET", self._proxy("/users", "GET"))
        users.add_method("POST", self._proxy("/users", "POST"))

        # ---------------------------------------------------------------
        # Outputs
        # ---------------------------------------------------------------
        cdk.CfnOutput(self, "LoadBalancerDNS",
                      value=self.load_balancer.load_balancer_dns_name)
        cdk.CfnOutput(self, "RepositoryUri", value=self.repository.repository_uri)
        cdk.CfnOutput(self, "ApiUrl", value=self.api.url)
        cdk.CfnOutput(self, "DocDbEndpoint",
                      value=self.db_cluster.cluster_endpoint.socket_address)
        if self.db_cluster.secret is not None:
            cdk.CfnOutput(self, "DocDbSecretArn",
                          value=self.db_cluster.secret.secret_arn)

    def _proxy(self, path: str, http_method: str) -> apigateway.HttpIntegration:
        """HTTP proxy to the service, reached through the VPC link."""
        url = f"http://{self.link_load_balancer.load_balancer_dns_name}{path}"
        return apigateway.HttpIntegration(
            url,
            http_method=http_method,
            proxy=True,
            options=apigateway.IntegrationOptions(
                connection_type=apigateway.ConnectionType.VPC_LINK,
                vpc_link=self.vpc_link,
            ),
        )


def link_subnets(vpc) -> List[ec2.ISubnet]:
    """Subnets for the VPC link's load balancer: private, else public."""
    subnets = list(vpc.private_subnets) or list(vpc.public_subnets)
    if not subnets:
        raise ValueError(
            f"VPC {vpc.vpc_id} has no private or public subnets for the VPC link"
        )
    return subnets
