"""State store backed by a versioned S3 bucket with conditional writes."""

from typing import Any, List, Optional, Tuple

from botocore.exceptions import ClientError
from pydantic import ValidationError as PydanticValidationError

from kubeconverge.utils.errors import (
    ErrorContext,
    ErrorHandler,
    StaleWriteError,
    StateError,
    classify_exception,
)
from kubeconverge.utils.logging import get_logger
from .models import StateDocument, StateVersion
from .store import StateStore

logger = get_logger(__name__)

# Returned by S3 when an If-Match / If-None-Match precondition fails or a
# concurrent conditional write to the same key wins the race.
CONFLICT_ERROR_CODES = {'PreconditionFailed', 'ConditionalRequestConflict', '412', '409'}
MISSING_ERROR_CODES = {'NoSuchKey', '404', 'NotFound'}


def _error_code(error: ClientError) -> str:
    return str(error.response.get('Error', {}).get('Code', ''))


class S3StateStore(StateStore):
    """Stores the state document as one object in a versioned bucket.

    Bucket versioning provides the immutable history; ``put_object`` with
    ``IfMatch`` (or ``IfNoneMatch='*'`` for the first write) provides the
    compare-and-swap. The serial comparison happens against the object read
    immediately before the conditional put, so a concurrent writer that
    sneaks in between is caught by the ETag precondition.
    """

    def __init__(self, s3_client: Any, bucket: str, key: str = "terraform.tfstate"):
        """Initialize S3 state store.

        Args:
            s3_client: boto3 S3 client
            bucket: Bucket name
            key: Object key of the state document
        """
        self.s3 = s3_client
        self.bucket = bucket
        self.key = key
        self._empty = StateDocument()

    def describe(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def _context(self, operation: str) -> ErrorContext:
        return ErrorContext(aws_service='s3', aws_operation=operation, resource_id=self.describe())

    def _get(self, version_id: Optional[str] = None) -> Tuple[Optional[StateDocument], Optional[str]]:
        kwargs = {'Bucket': self.bucket, 'Key': self.key}
        if version_id:
            kwargs['VersionId'] = version_id
        try:
            response = self.s3.get_object(**kwargs)
        except ClientError as e:
            if _error_code(e) in MISSING_ERROR_CODES:
                return None, None
            raise StateError(
                f"Failed to read state from {self.describe()}: {e}",
                context=self._context('GetObject'),
                cause=classify_exception(e)
            )
        except ErrorHandler.NETWORK_EXCEPTIONS as e:
            raise StateError(
                f"Failed to read state from {self.describe()}: {e}",
                context=self._context('GetObject'),
                cause=classify_exception(e)
            )

        body = response['Body'].read()
        try:
            doc = StateDocument.from_json(body.decode('utf-8') if isinstance(body, bytes) else body)
        except PydanticValidationError as e:
            raise StateError(f"Failed to parse state from {self.describe()}: {e}", cause=e)
        return self._verified(doc, self.describe()), response.get('ETag')

    def read(self) -> Tuple[StateDocument, int]:
        doc, _ = self._get()
        if doc is None:
            doc = self._empty.model_copy(deep=True)
        return doc, doc.serial

    def write_if_serial_matches(self, new_doc: StateDocument, expected_serial: int) -> StateDocument:
        current, etag = self._get()
        stored_serial = current.serial if current else 0
        if stored_serial != expected_serial:
            raise StaleWriteError(expected_serial, stored_serial)

        doc = self._prepare(new_doc, expected_serial, current)
        kwargs = {
            'Bucket': self.bucket,
            'Key': self.key,
            'Body': doc.to_json().encode('utf-8'),
            'ContentType': 'application/json',
            'ServerSideEncryption': 'AES256',
            'Metadata': {'serial': str(doc.serial), 'content-hash': doc.content_hash},
        }
        if etag:
            kwargs['IfMatch'] = etag
        else:
            kwargs['IfNoneMatch'] = '*'

        try:
            response = self.s3.put_object(**kwargs)
        except ClientError as e:
            if _error_code(e) in CONFLICT_ERROR_CODES:
                latest, _ = self._get()
                raise StaleWriteError(expected_serial, latest.serial if latest else 0, cause=e)
            raise StateError(
                f"Failed to write state to {self.describe()}: {e}",
                context=self._context('PutObject'),
                cause=classify_exception(e)
            )
        except ErrorHandler.NETWORK_EXCEPTIONS as e:
            raise StateError(
                f"Failed to write state to {self.describe()}: {e}",
                context=self._context('PutObject'),
                cause=classify_exception(e)
            )

        logger.debug(
            f"State written to {self.describe()}: serial={doc.serial} version={response.get('VersionId')}",
            extra={'serial': doc.serial}
        )
        return doc

    def list_versions(self) -> List[StateVersion]:
        versions: List[StateVersion] = []
        paginator = self.s3.get_paginator('list_object_versions')
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.key):
                for entry in page.get('Versions', []):
                    if entry.get('Key') != self.key:
                        continue
                    doc, _ = self._get(entry['VersionId'])
                    if doc is None:
                        continue
                    versions.append(StateVersion(
                        version_id=entry['VersionId'],
                        serial=doc.serial,
                        content_hash=doc.content_hash,
                        written_at=entry['LastModified'],
                        is_latest=bool(entry.get('IsLatest')),
                    ))
        except ClientError as e:
            raise StateError(
                f"Failed to list state versions in {self.describe()}: {e}",
                context=self._context('ListObjectVersions'),
                cause=classify_exception(e)
            )
        return sorted(versions, key=lambda v: v.serial)

    def read_version(self, version_id: str) -> StateDocument:
        doc, _ = self._get(version_id)
        if doc is None:
            raise StateError(f"State version not found: {version_id}")
        return doc
