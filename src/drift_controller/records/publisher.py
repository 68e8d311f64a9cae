"""Publish drift records to the S3 bucket backing the status dashboard."""

import json
from typing import Any, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from drift_controller.records.models import DriftRecord
from drift_controller.utils.errors import ErrorContext, RecordStoreError, error_handler
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)


class S3RecordPublisher:
    """Mirrors DriftRecords as JSON objects under a bucket prefix."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "drift-status/",
        client: Optional[Any] = None,
        region: Optional[str] = None
    ):
        """Initialize publisher.

        Args:
            bucket: Dashboard bucket name
            prefix: Key prefix for record objects
            client: Pre-built S3 client (created lazily when omitted)
            region: Region for the lazily created client
        """
        self.bucket = bucket
        self.prefix = prefix if not prefix or prefix.endswith("/") else f"{prefix}/"
        self.region = region
        self._client = client

    @property
    def client(self):
        """Get or create the S3 client."""
        if self._client is None:
            session = boto3.Session(region_name=self.region) if self.region else boto3.Session()
            self._client = session.client(
                "s3",
                config=Config(retries={"mode": "standard", "max_attempts": 3}, connect_timeout=10),
            )
            logger.debug(f"Created S3 client for s3://{self.bucket}/{self.prefix}")
        return self._client

    def key_for(self, environment: str) -> str:
        return f"{self.prefix}{environment}.json"

    def publish(self, record: DriftRecord) -> None:
        """Upload one environment's record.

        Raises:
            RecordStoreError: If the upload fails
        """
        self._put(self.key_for(record.environment), record.to_dict(), record.environment)

    def publish_index(self, records: List[DriftRecord]) -> None:
        """Upload the aggregated index document.

        Raises:
            RecordStoreError: If the upload fails
        """
        self._put(
            f"{self.prefix}index.json",
            {"environments": [record.to_dict() for record in records]},
            None,
        )

    def _put(self, key: str, body: dict, environment: Optional[str]) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=json.dumps(body, indent=2).encode("utf-8"),
                ContentType="application/json",
                CacheControl="no-cache",
            )
        except (ClientError, BotoCoreError) as e:
            handled = error_handler.handle_exception(
                e, ErrorContext(environment=environment, operation="publish")
            )
            raise RecordStoreError(
                f"Failed to publish s3://{self.bucket}/{key}: {handled.message}",
                context=handled.context,
                cause=e,
                suggestions=handled.suggestions,
            )
        logger.debug(f"Published s3://{self.bucket}/{key}")
