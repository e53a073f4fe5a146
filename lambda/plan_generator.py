from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

DEFAULT_REGION = "us-east-1"
RESOURCE_NAME_PREFIX = "change-broker"
CLARIFY = "clarify"

CHANGE_VERBS = ("create", "deploy", "setup", "build", "launch", "make", "provision")

MANAGED_TAGS = {
    "Environment": "Development",
    "ManagedBy": "ChangeBroker",
}

KNOWLEDGE_BASE = (
    (
        "s3",
        "Amazon S3 (Simple Storage Service) is object storage for any amount of data. Use it for "
        "backups, static websites, data lakes, and application data. It offers high durability "
        "(99.999999999%), multiple storage classes, and lifecycle policies to optimize costs.",
    ),
    (
        "sqs",
        "Amazon SQS is a fully managed message queue. Use it to decouple producers from consumers; "
        "standard queues offer at-least-once delivery and nearly unlimited throughput.",
    ),
    (
        "dynamodb",
        "Amazon DynamoDB is a serverless key-value and document database with single-digit "
        "millisecond latency. On-demand capacity bills per request with no capacity planning.",
    ),
    (
        "ec2",
        "Amazon EC2 (Elastic Compute Cloud) provides resizable virtual servers. Choose from various "
        "instance types optimized for compute, memory, storage, or GPU workloads. Pay only for what "
        "you use with on-demand pricing, or save up to 75% with Reserved Instances.",
    ),
    (
        "lambda",
        "AWS Lambda runs code without servers. You pay only for compute time (per millisecond). "
        "Perfect for event-driven applications, APIs, data processing, and scheduled tasks.",
    ),
    (
        "vpc",
        "Amazon VPC (Virtual Private Cloud) lets you create isolated networks in AWS. Control IP "
        "ranges, subnets, route tables, and network gateways.",
    ),
    (
        "pricing",
        "AWS pricing is pay-as-you-go. Major factors: instance type, data transfer, storage, and "
        "region. Enable AWS Cost Explorer and Budget alerts to keep spend visible.",
    ),
    (
        "terraform",
        "Terraform is Infrastructure as Code (IaC). Write declarative config to define "
        "infrastructure, version control it like code, and safely plan changes before applying.",
    ),
)

DEFAULT_ANSWER = (
    "I can help with AWS and Terraform! Ask about S3, SQS, DynamoDB, EC2, Lambda, VPC, pricing, "
    "or tell me what infrastructure to create."
)


@dataclass(frozen=True)
class Plan:
    resource_type: str
    resource_config: dict[str, Any]
    rendered_artifact: str
    human_plan: str
    resource_list: list[str] = field(default_factory=list)
    cost_estimate: str = ""
    warnings: list[str] = field(default_factory=list)
    summary: str = ""

    @property
    def actionable(self) -> bool:
        return self.resource_type != CLARIFY and bool(self.resource_list)


@dataclass(frozen=True)
class PlanRule:
    name: str
    matches: Callable[[str], bool]
    build: Callable[[str, str, str], Plan]


def classify(message: str) -> bool:
    """True when the message reads as a change request.

    Plain substring matching: "remake" or "builder" also count. Nothing is touched
    before the user confirms, so false positives only cost a plan.
    """
    lower = str(message or "").lower()
    return any(verb in lower for verb in CHANGE_VERBS)


def answer(question: str) -> str:
    lower = str(question or "").lower()
    for keyword, text in KNOWLEDGE_BASE:
        if keyword in lower:
            return text
    return DEFAULT_ANSWER


def _resource_name(now: datetime) -> str:
    # Epoch millis keep names time-derived; the random suffix keeps two requests in the
    # same millisecond apart.
    return f"{RESOURCE_NAME_PREFIX}-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}"


def _hcl_tags(name_tag: str, created_at: str) -> str:
    lines = [f'    Name        = "{name_tag}"']
    for key, value in MANAGED_TAGS.items():
        lines.append(f'    {key:<11} = "{value}"')
    lines.append(f'    CreatedAt   = "{created_at}"')
    return "\n".join(lines)


def resource_tags(config: dict[str, Any]) -> dict[str, str]:
    tags = {"Name": str(config.get("nameTag") or "")}
    tags.update(MANAGED_TAGS)
    tags["CreatedAt"] = str(config.get("createdAt") or "")
    return tags


def _s3_bucket_plan(name: str, created_at: str, region: str) -> Plan:
    config = {
        "bucketName": name,
        "region": region,
        "nameTag": "Change Broker Bucket",
        "createdAt": created_at,
    }
    artifact = f"""resource "aws_s3_bucket" "main" {{
  bucket = "{name}"

  tags = {{
{_hcl_tags(config["nameTag"], created_at)}
  }}
}}

resource "aws_s3_bucket_versioning" "main" {{
  bucket = aws_s3_bucket.main.id

  versioning_configuration {{
    status = "Enabled"
  }}
}}

resource "aws_s3_bucket_server_side_encryption_configuration" "main" {{
  bucket = aws_s3_bucket.main.id

  rule {{
    apply_server_side_encryption_by_default {{
      sse_algorithm = "AES256"
    }}
  }}
}}

output "bucket_name" {{
  value = aws_s3_bucket.main.id
}}

output "bucket_arn" {{
  value = aws_s3_bucket.main.arn
}}
"""
    human_plan = f"""Terraform will perform the following actions:

  # aws_s3_bucket.main will be created
  + resource "aws_s3_bucket" "main" {{
      + bucket                      = "{name}"
      + bucket_domain_name          = (known after apply)
      + region                      = "{region}"
    }}

  # aws_s3_bucket_versioning.main will be created
  # aws_s3_bucket_server_side_encryption_configuration.main will be created

Plan: 3 to add, 0 to change, 0 to destroy."""
    return Plan(
        resource_type="s3-bucket",
        resource_config=config,
        rendered_artifact=artifact,
        human_plan=human_plan,
        resource_list=[
            "S3 Bucket with versioning enabled",
            "Server-side encryption (AES256)",
            "Resource tags for management",
        ],
        cost_estimate="$0.023/month for 1GB storage. FREE for first 12 months (5GB free)",
        warnings=[
            "You will be charged by AWS starting immediately",
            "Bucket name must be globally unique",
            "Delete all objects before deleting bucket",
            "Data transfer costs $0.09/GB after 100GB/month",
            'Run "terraform destroy" when done',
        ],
        summary="I'll create an S3 bucket in your AWS account with the following features:",
    )


def _sqs_queue_plan(name: str, created_at: str, region: str) -> Plan:
    config = {
        "queueName": name,
        "region": region,
        "nameTag": "Change Broker Queue",
        "createdAt": created_at,
        "messageRetentionSeconds": 345600,
    }
    artifact = f"""resource "aws_sqs_queue" "main" {{
  name                      = "{name}"
  message_retention_seconds = 345600
  sqs_managed_sse_enabled   = true

  tags = {{
{_hcl_tags(config["nameTag"], created_at)}
  }}
}}

output "queue_name" {{
  value = aws_sqs_queue.main.name
}}

output "queue_url" {{
  value = aws_sqs_queue.main.url
}}

output "queue_arn" {{
  value = aws_sqs_queue.main.arn
}}
"""
    human_plan = f"""Terraform will perform the following actions:

  # aws_sqs_queue.main will be created
  + resource "aws_sqs_queue" "main" {{
      + name                      = "{name}"
      + message_retention_seconds = 345600
      + sqs_managed_sse_enabled   = true
      + url                       = (known after apply)
    }}

Plan: 1 to add, 0 to change, 0 to destroy."""
    return Plan(
        resource_type="sqs-queue",
        resource_config=config,
        rendered_artifact=artifact,
        human_plan=human_plan,
        resource_list=[
            "SQS standard queue (4 day retention)",
            "SQS-managed server-side encryption",
            "Resource tags for management",
        ],
        cost_estimate="First 1M requests/month FREE, then $0.40 per million requests",
        warnings=[
            "You will be charged by AWS starting immediately",
            "Messages are deleted after 4 days if not consumed",
            "Queue names must be unique per account and region",
            'Run "terraform destroy" when done',
        ],
        summary="I'll create an SQS queue in your AWS account with the following features:",
    )


def _dynamodb_table_plan(name: str, created_at: str, region: str) -> Plan:
    config = {
        "tableName": name,
        "region": region,
        "nameTag": "Change Broker Table",
        "createdAt": created_at,
        "hashKey": "id",
    }
    artifact = f"""resource "aws_dynamodb_table" "main" {{
  name         = "{name}"
  billing_mode = "PAY_PER_REQUEST"
  hash_key     = "id"

  attribute {{
    name = "id"
    type = "S"
  }}

  tags = {{
{_hcl_tags(config["nameTag"], created_at)}
  }}
}}

output "table_name" {{
  value = aws_dynamodb_table.main.name
}}

output "table_arn" {{
  value = aws_dynamodb_table.main.arn
}}
"""
    human_plan = f"""Terraform will perform the following actions:

  # aws_dynamodb_table.main will be created
  + resource "aws_dynamodb_table" "main" {{
      + name         = "{name}"
      + billing_mode = "PAY_PER_REQUEST"
      + hash_key     = "id"
      + arn          = (known after apply)
    }}

Plan: 1 to add, 0 to change, 0 to destroy."""
    return Plan(
        resource_type="dynamodb-table",
        resource_config=config,
        rendered_artifact=artifact,
        human_plan=human_plan,
        resource_list=[
            "DynamoDB table with on-demand capacity",
            "Partition key: id (string)",
            "Resource tags for management",
        ],
        cost_estimate="$1.25 per million writes, $0.25 per million reads, $0.25/GB-month storage",
        warnings=[
            "You will be charged by AWS starting immediately",
            "On-demand capacity scales with traffic; set budget alerts",
            "Table names must be unique per account and region",
            'Run "terraform destroy" when done',
        ],
        summary="I'll create a DynamoDB table in your AWS account with the following features:",
    )


# Evaluated in order; the first matching rule wins.
RULES: tuple[PlanRule, ...] = (
    PlanRule("s3-bucket", lambda m: "s3" in m and "bucket" in m, _s3_bucket_plan),
    PlanRule("sqs-queue", lambda m: "sqs" in m or "queue" in m, _sqs_queue_plan),
    PlanRule("dynamodb-table", lambda m: "dynamodb" in m or "table" in m, _dynamodb_table_plan),
)


def clarify_plan() -> Plan:
    supported = ", ".join(rule.name for rule in RULES)
    return Plan(
        resource_type=CLARIFY,
        resource_config={},
        rendered_artifact="# Specify resource type",
        human_plan="No plan available",
        resource_list=[],
        cost_estimate="Unknown",
        warnings=[f"Specify a valid resource type ({supported})"],
        summary="Please specify what AWS resource you want to create, for example: create an s3 bucket.",
    )


def generate(message: str, *, region: str = DEFAULT_REGION, now: datetime | None = None) -> Plan:
    lower = str(message or "").lower()
    when = now or datetime.now(timezone.utc)
    for rule in RULES:
        if rule.matches(lower):
            return rule.build(_resource_name(when), when.isoformat(), region)
    return clarify_plan()
