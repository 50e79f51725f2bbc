from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.client import Config as BotoConfig

from app.core.config import settings


def resolve_storage_root() -> Path:
    """Directory holding locally stored artifacts."""
    raw = os.getenv("SIGNFLOW_STORAGE") or settings.signflow_storage or "_storage"
    return Path(raw).expanduser().resolve()


class StorageBackend(Protocol):
    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:  # returns storage path/URL
        ...

    def presigned_url(self, *, path: str, expires_seconds: int = 3600) -> str | None:
        ...

    def load_bytes(self, path: str) -> bytes:
        ...


@dataclass
class LocalStorage:
    base_dir: Path

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:
        target_dir = self.base_dir / root
        target_dir.mkdir(parents=True, exist_ok=True)
        file_path = target_dir / name
        file_path.write_bytes(data)
        return file_path.relative_to(self.base_dir).as_posix()

    def presigned_url(self, *, path: str, expires_seconds: int = 3600) -> str | None:  # noqa: ARG002
        return None

    def load_bytes(self, path: str) -> bytes:
        file_path = Path(path)
        if not file_path.is_absolute():
            file_path = self.base_dir / path
        if not file_path.exists():
            raise FileNotFoundError(f"Artifact {path!r} not found in storage")
        return file_path.read_bytes()


@dataclass
class S3Storage:
    bucket: str
    client: Any

    def save_bytes(self, *, root: str, name: str, data: bytes) -> str:
        key = f"{root.strip('/')}/{name}"
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType="application/pdf")
        return f"s3://{self.bucket}/{key}"

    @staticmethod
    def _split(path: str) -> tuple[str, str]:
        if not path.startswith("s3://"):
            raise ValueError("Expected s3:// path for S3 storage")
        bucket, key = path[len("s3://"):].split("/", 1)
        return bucket, key

    def presigned_url(self, *, path: str, expires_seconds: int = 3600) -> str | None:
        if not path.startswith("s3://"):
            return None
        bucket, key = self._split(path)
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    def load_bytes(self, path: str) -> bytes:
        bucket, key = self._split(path)
        response = self.client.get_object(Bucket=bucket, Key=key)
        body = response.get("Body")
        return body.read() if body else b""


def get_storage() -> StorageBackend:
    # Local storage during tests and whenever an explicit directory is configured
    if os.getenv("PYTEST_CURRENT_TEST") or os.getenv("SIGNFLOW_STORAGE"):
        return LocalStorage(base_dir=resolve_storage_root())

    if settings.s3_endpoint_url and settings.s3_access_key and settings.s3_secret_key and settings.s3_bucket_artifacts:
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name=os.getenv("AWS_REGION", "us-east-1"),
        )
        return S3Storage(bucket=settings.s3_bucket_artifacts, client=client)

    return LocalStorage(base_dir=resolve_storage_root())
