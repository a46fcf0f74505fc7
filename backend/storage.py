"""Object storage adapters for product media.

Every store exposes ``upload(key, data, content_type) -> url``. The returned
URL is public and durable; failures raise :class:`UpstreamFailure`.
"""
import os
from typing import Optional
from urllib.parse import quote, urljoin

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from werkzeug.utils import secure_filename

from .errors import UpstreamFailure


class MediaStore:
    def upload(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError


class LocalMediaStore(MediaStore):
    """Writes objects into a folder that the app serves under ``/uploads``."""

    def __init__(self, folder: str, public_base_url: str):
        if not folder:
            raise ValueError("A media upload folder is required.")
        self.folder = folder
        self.public_base_url = public_base_url.rstrip("/") + "/"
        os.makedirs(self.folder, exist_ok=True)

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        filename = secure_filename(key)
        if not filename:
            raise UpstreamFailure("Please choose a valid file name.")

        destination = os.path.join(self.folder, filename)
        try:
            with open(destination, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise UpstreamFailure(
                "We could not store the uploaded media. Please try again."
            ) from exc

        return urljoin(self.public_base_url, f"uploads/{filename}")


class S3BucketStore(MediaStore):
    """Uploads public-read objects to an S3 compatible bucket."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        if not bucket:
            raise ValueError("Object storage configuration is incomplete.")
        self.bucket = bucket
        self.endpoint_url = (endpoint_url or "").rstrip("/")
        self.region_name = region_name
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            region_name=region_name or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(key)}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{quote(key)}"
        region = self.region_name or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{quote(key)}"

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL="public-read",
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise UpstreamFailure(
                f"Object storage rejected the upload ({code})."
            ) from exc
        except BotoCoreError as exc:
            raise UpstreamFailure(f"Object storage is unreachable: {exc}") from exc

        return self.object_url(key)
