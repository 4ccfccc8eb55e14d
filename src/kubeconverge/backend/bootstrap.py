"""Provision the remote backend: a versioned S3 bucket and a DynamoDB lock table."""

from dataclasses import dataclass
from typing import Any, Optional

import yaml
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field, model_validator

from kubeconverge.config.models import BackendConfig
from kubeconverge.utils.aws_client import AWSClientManager
from kubeconverge.utils.errors import ErrorContext, StateError, classify_exception
from kubeconverge.utils.logging import get_logger
from kubeconverge.utils.retry import with_retry

logger = get_logger(__name__)

DEFAULT_PROJECT = "k8s-learning-project"
DEFAULT_REGION = "us-east-1"


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class BootstrapSettings(BaseModel):
    """Names and capacities of the backend resources."""

    project: str = Field(DEFAULT_PROJECT, pattern=r"^[a-z0-9-]+$")
    region: str = DEFAULT_REGION
    bucket: Optional[str] = Field(None, description="Defaults to terraform-state-<project>")
    lock_table: Optional[str] = Field(None, description="Defaults to terraform-lock-<project>")
    key: str = "terraform.tfstate"
    read_capacity: int = Field(5, ge=1)
    write_capacity: int = Field(5, ge=1)
    profile: Optional[str] = None

    @model_validator(mode="after")
    def default_names(self):
        if not self.bucket:
            self.bucket = f"terraform-state-{self.project}"
        if not self.lock_table:
            self.lock_table = f"terraform-lock-{self.project}"
        return self


@dataclass
class BackendBootstrapResult:
    """What ``bootstrap_backend`` found or created."""

    bucket: str
    lock_table: str
    region: str
    key: str
    bucket_created: bool
    table_created: bool
    profile: Optional[str] = None
    account_id: Optional[str] = None

    def backend_config(self) -> BackendConfig:
        return BackendConfig(
            type="s3",
            bucket=self.bucket,
            key=self.key,
            region=self.region,
            lock_table=self.lock_table,
            profile=self.profile,
        )

    def render(self) -> str:
        """``backend:`` block to paste into a configuration file."""
        backend = self.backend_config().model_dump(exclude_none=True, exclude={'path'})
        return yaml.safe_dump({'backend': backend}, sort_keys=False)


@with_retry(max_retries=3, base_delay=1.0)
def _create_bucket(s3: Any, bucket: str, region: str) -> bool:
    kwargs = {'Bucket': bucket}
    # us-east-1 rejects an explicit LocationConstraint
    if region != "us-east-1":
        kwargs['CreateBucketConfiguration'] = {'LocationConstraint': region}
    try:
        s3.create_bucket(**kwargs)
    except ClientError as e:
        if _error_code(e) == 'BucketAlreadyOwnedByYou':
            logger.info(f"Bucket {bucket} already exists")
            return False
        raise
    logger.info(f"Created bucket {bucket}")
    return True


@with_retry(max_retries=3, base_delay=1.0)
def _secure_bucket(s3: Any, bucket: str) -> None:
    s3.put_bucket_versioning(
        Bucket=bucket,
        VersioningConfiguration={'Status': 'Enabled'}
    )
    s3.put_bucket_encryption(
        Bucket=bucket,
        ServerSideEncryptionConfiguration={
            'Rules': [{'ApplyServerSideEncryptionByDefault': {'SSEAlgorithm': 'AES256'}}]
        }
    )
    s3.put_public_access_block(
        Bucket=bucket,
        PublicAccessBlockConfiguration={
            'BlockPublicAcls': True,
            'IgnorePublicAcls': True,
            'BlockPublicPolicy': True,
            'RestrictPublicBuckets': True,
        }
    )
    logger.info(f"Enabled versioning, AES256 encryption and public access block on {bucket}")


@with_retry(max_retries=3, base_delay=1.0)
def _create_lock_table(dynamodb: Any, table: str, read_capacity: int, write_capacity: int) -> bool:
    try:
        dynamodb.create_table(
            TableName=table,
            AttributeDefinitions=[{'AttributeName': 'LockID', 'AttributeType': 'S'}],
            KeySchema=[{'AttributeName': 'LockID', 'KeyType': 'HASH'}],
            ProvisionedThroughput={
                'ReadCapacityUnits': read_capacity,
                'WriteCapacityUnits': write_capacity,
            }
        )
    except ClientError as e:
        if _error_code(e) == 'ResourceInUseException':
            logger.info(f"Lock table {table} already exists")
            return False
        raise
    logger.info(f"Created lock table {table}")
    return True


def bootstrap_backend(
    settings: Optional[BootstrapSettings] = None,
    client_manager: Optional[AWSClientManager] = None,
    wait_delay: int = 5,
    wait_attempts: int = 24
) -> BackendBootstrapResult:
    """Create (or verify) the remote state backend.

    Safe to run repeatedly: existing buckets and tables are reused and their
    settings re-applied.

    Args:
        settings: Resource names and capacities
        client_manager: AWS client manager, created from settings if omitted
        wait_delay: Seconds between lock table status polls
        wait_attempts: Maximum lock table status polls

    Returns:
        BackendBootstrapResult describing the backend

    Raises:
        StateError: If a backend resource cannot be created
    """
    settings = settings or BootstrapSettings()
    client_manager = client_manager or AWSClientManager(
        profile=settings.profile, region=settings.region
    )
    logger.info(f"Setting up backend in {settings.region}: bucket {settings.bucket}, "
                f"lock table {settings.lock_table}")
    try:
        identity = client_manager.validate_credentials()
        s3 = client_manager.get_client('s3')
        dynamodb = client_manager.get_client('dynamodb')

        bucket_created = _create_bucket(s3, settings.bucket, settings.region)
        _secure_bucket(s3, settings.bucket)
        table_created = _create_lock_table(
            dynamodb, settings.lock_table, settings.read_capacity, settings.write_capacity
        )
        logger.info(f"Waiting for lock table {settings.lock_table} to become active")
        dynamodb.get_waiter('table_exists').wait(
            TableName=settings.lock_table,
            WaiterConfig={'Delay': wait_delay, 'MaxAttempts': wait_attempts}
        )
    except Exception as e:
        error = classify_exception(e, ErrorContext(operation='backend init'))
        raise StateError(
            f"Backend setup failed: {error.message}",
            context=error.context,
            cause=e,
            suggestions=error.suggestions or [
                'Check that the bucket name is globally unique',
                'Verify permissions for s3:CreateBucket and dynamodb:CreateTable',
            ]
        ) from e

    logger.info("Backend setup complete")
    return BackendBootstrapResult(
        bucket=settings.bucket,
        lock_table=settings.lock_table,
        region=settings.region,
        key=settings.key,
        bucket_created=bucket_created,
        table_created=table_created,
        profile=settings.profile,
        account_id=getattr(identity, 'account_id', None),
    )
