import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cloudwatch as cloudwatch,
    aws_events as events,
    aws_events_targets as events_targets,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct


class ChangeBrokerStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = (os.getenv("STAGE") or "prod").strip() or "prod"
        schema_version = "2026-10-01"
        target_region = (os.getenv("TARGET_REGION") or "us-east-1").strip()
        execution_mode = (os.getenv("EXECUTION_MODE") or "driver").strip()
        action_ttl_seconds = 600
        workspace_max_age_minutes = 60
        # Every apply step shares one deadline: budget + response margin stays under the
        # function timeout, and the API integration waits as long as the function may run.
        function_timeout = Duration.minutes(15)
        execution_budget_seconds = 780
        response_margin_seconds = 15
        terraform_timeout_seconds = 300

        broker_execution_role = iam.Role(
            self,
            "BrokerLambdaExecutionRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AWSLambdaBasicExecutionRole"
                )
            ],
            description=(
                "Identity customers trust in their cross-account role. It can only assume roles; "
                "all resource calls run on the assumed session."
            ),
        )

        # Customer roles live in arbitrary accounts; the external-id condition is enforced
        # by each customer's trust policy.
        broker_execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["sts:AssumeRole"],
                resources=["arn:aws:iam::*:role/*"],
            )
        )

        broker_fn = _lambda.Function(
            self,
            "ChangeBrokerHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="broker_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=function_timeout,
            memory_size=512,
            # One warm process holds the staged-action ledger between chat and apply.
            reserved_concurrent_executions=1,
            role=broker_execution_role,
            environment={
                "SCHEMA_VERSION": schema_version,
                "BROKER_ENV": "production",
                "TARGET_REGION": target_region,
                "WORKSPACE_ROOT": "/tmp/change-broker-workspaces",
                "ACTION_TTL_SECONDS": str(action_ttl_seconds),
                "WORKSPACE_MAX_AGE_MINUTES": str(workspace_max_age_minutes),
                # The schedule rule below drives sweeps; frozen Lambda threads are unreliable.
                "JANITOR_INTERVAL_SECONDS": "0",
                "EXECUTION_MODE": execution_mode,
                "EXECUTION_BUDGET_SECONDS": str(execution_budget_seconds),
                "RESPONSE_MARGIN_SECONDS": str(response_margin_seconds),
                "TERRAFORM_TIMEOUT_SECONDS": str(terraform_timeout_seconds),
                "VERIFY_DURATION_SECONDS": "900",
                "EXECUTION_DURATION_SECONDS": "3600",
            },
        )

        log_group = logs.LogGroup(
            self,
            "ChangeBrokerLogGroup",
            log_group_name=f"/aws/lambda/{broker_fn.function_name}",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=RemovalPolicy.DESTROY,
        )

        rest_api = apigw.RestApi(
            self,
            "ChangeBrokerApi",
            rest_api_name="change-broker-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                throttling_rate_limit=10,
                throttling_burst_limit=20,
            ),
            # Integration timeouts above 29 seconds are only available on regional APIs.
            endpoint_types=[apigw.EndpointType.REGIONAL],
            cloud_watch_role=False,
        )
        integration = apigw.LambdaIntegration(broker_fn, timeout=function_timeout)

        rest_api.root.add_method("GET", integration)
        health = rest_api.root.add_resource("health")
        health.add_method("GET", integration)

        api = rest_api.root.add_resource("api")
        auth = api.add_resource("auth")
        verify_role = auth.add_resource("verify-role")
        verify_role.add_method("POST", integration)
        chat = api.add_resource("chat")
        chat.add_method("POST", integration)
        apply = api.add_resource("apply")
        apply.add_method("POST", integration)

        events.Rule(
            self,
            "WorkspaceJanitorSchedule",
            schedule=events.Schedule.rate(Duration.hours(1)),
            targets=[events_targets.LambdaFunction(broker_fn)],
        )

        logs.MetricFilter(
            self,
            "ChangeBrokerErrorMetricFilter",
            log_group=log_group,
            metric_namespace="ChangeBroker",
            metric_name="Errors",
            filter_pattern=logs.FilterPattern.string_value("$.outcome", "=", "error"),
            metric_value="1",
        )

        cloudwatch.Alarm(
            self,
            "ChangeBrokerErrorsAlarm",
            metric=cloudwatch.Metric(
                namespace="ChangeBroker",
                metric_name="Errors",
                statistic="Sum",
                period=Duration.minutes(5),
            ),
            threshold=1,
            evaluation_periods=1,
            datapoints_to_alarm=1,
        )

        CfnOutput(
            self,
            "ApiBaseUrl",
            value=f"{rest_api.url}api",
            description="Base URL for verify-role, chat, and apply.",
        )

        CfnOutput(
            self,
            "BrokerRoleArn",
            value=broker_execution_role.role_arn,
            description="Principal customers must trust (with their external id) in their cross-account role.",
        )

        CfnOutput(
            self,
            "SchemaVersion",
            value=schema_version,
        )
