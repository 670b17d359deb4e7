"""
S3 destination for backup artifacts.

Uploads artifacts under ``{prefix}/{id}`` and prunes the oldest artifacts
beyond a retention count. Works against AWS S3 as well as S3-compatible
stores (minio, ceph) through a custom endpoint and path-style addressing.
"""

import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import ClientError

from backup_operator.backup import BackupObject, Destination

logger = logging.getLogger(__name__)

DEFAULT_ENCRYPTION_ALGORITHM = 'AES256'
DEFAULT_PART_SIZE = 5 * 1024 * 1024
DEFAULT_REGION = 'us-east-1'

_BUCKET_EXISTS_CODES = ('BucketAlreadyExists', 'BucketAlreadyOwnedByYou')


@dataclass
class S3DestinationConf:
    """Connection and layout settings of an S3 destination"""
    bucket: str
    endpoint: str = ''
    access_key: str = ''
    secret_key: str = ''
    prefix: str = ''
    encryption_key: Optional[str] = None
    encryption_algorithm: str = ''
    disable_ssl: bool = False
    insecure_skip_verify: bool = False
    part_size: int = DEFAULT_PART_SIZE
    region: str = DEFAULT_REGION


class S3Destination(Destination):
    """
    Handler for storing backup artifacts in an S3 bucket.

    The boto3 client is thread safe, so one instance may serve concurrent
    uploads.
    """

    def __init__(self, conf: S3DestinationConf):
        """
        Create the client and make sure the bucket exists.

        Args:
            conf: Destination settings

        Raises:
            ClientError: If the bucket cannot be created for any reason
                other than already existing
        """
        self.bucket = conf.bucket
        self.prefix = conf.prefix
        self.encryption_key = conf.encryption_key
        self.encryption_algorithm = conf.encryption_algorithm
        self.transfer_config = TransferConfig(
            multipart_threshold=conf.part_size or DEFAULT_PART_SIZE,
            multipart_chunksize=conf.part_size or DEFAULT_PART_SIZE,
        )

        self.client = boto3.client(
            's3',
            endpoint_url=conf.endpoint or None,
            aws_access_key_id=conf.access_key,
            aws_secret_access_key=conf.secret_key,
            region_name=conf.region,
            use_ssl=not conf.disable_ssl,
            verify=not conf.insecure_skip_verify,
            config=Config(s3={'addressing_style': 'path'}),
        )

        try:
            self.client.create_bucket(Bucket=self.bucket)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code not in _BUCKET_EXISTS_CODES:
                raise
            logger.debug(f"Bucket {self.bucket} already exists ({error_code})")

    def _encryption_params(self) -> Dict[str, str]:
        """SSE-C parameters, identical for uploads and metadata lookups"""
        if self.encryption_key is None:
            return {}
        return {
            'SSECustomerAlgorithm': self.encryption_algorithm or DEFAULT_ENCRYPTION_ALGORITHM,
            'SSECustomerKey': self.encryption_key,
        }

    def store(self, obj: BackupObject) -> int:
        """
        Upload an artifact and return its stored size.

        Args:
            obj: Artifact to upload; its data is streamed, never buffered
                to disk

        Returns:
            Size of the stored object as reported by the backend

        Raises:
            ClientError: If the upload or the size lookup fails
        """
        key = posixpath.join(self.prefix, obj.id)
        encryption = self._encryption_params()

        logger.info(f"Upload starting: bucket={self.bucket} key={key}")
        self.client.upload_fileobj(
            obj.data,
            self.bucket,
            key,
            ExtraArgs=encryption or None,
            Config=self.transfer_config,
        )
        logger.info(f"Upload successful: bucket={self.bucket} key={key}")

        head = self.client.head_object(Bucket=self.bucket, Key=key, **encryption)
        return head['ContentLength']

    def _listing_prefix(self) -> str:
        """Listing prefix of this destination; plan `db` must not see the objects of plan `db-2`"""
        if not self.prefix:
            return ''
        return self.prefix.rstrip('/') + '/'

    def list_objects(self) -> List[Dict[str, Any]]:
        """
        List every object under the prefix, across all result pages.

        The V1 listing is used on purpose: V2 misbehaves on older ceph
        installations.
        """
        objects = []
        paginator = self.client.get_paginator('list_objects')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self._listing_prefix()):
            objects.extend(page.get('Contents', []))
        return objects

    def ensure_retention(self, max_count: int) -> None:
        """
        Keep the max_count most recent artifacts and delete the others.

        Deletion stops at the first failure; whatever is left over is
        removed by the next run.

        Raises:
            ValueError: If max_count is negative
            ClientError: If listing or a deletion fails
        """
        if max_count < 0:
            raise ValueError("max_count must not be negative")

        objects = self.list_objects()
        if len(objects) <= max_count:
            return

        # Newest first; identical timestamps fall back to key order
        ordered = sorted(objects, key=lambda o: o['Key'])
        ordered.sort(key=lambda o: o['LastModified'], reverse=True)

        obsolete = ordered[max_count:]
        logger.info(
            f"Retention: {len(objects)} objects under {self.bucket}/{self.prefix}, "
            f"deleting {len(obsolete)}"
        )
        for obj in obsolete:
            self.client.delete_object(Bucket=self.bucket, Key=obj['Key'])
            logger.debug(f"Deleted obsolete object {obj['Key']}")
