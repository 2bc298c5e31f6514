from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

import boto3
import structlog
from botocore.exceptions import ClientError

from .codec import decrypt_session, encrypt_session, to_fernet
from .models import PersistedSession
from .store import OptimisticLockError, SessionStore


log = structlog.get_logger(__name__)


# Environment variable names for convenience configuration
ENV_BUCKET = "AUTH_STATE_BUCKET"
ENV_KEY = "AUTH_STATE_KEY"
ENV_FERNET_KEY = "AUTH_FERNET_KEY"

DEFAULT_KEY = "session.bin"


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3SessionStore(SessionStore):
    """
    S3-backed persistence for `PersistedSession`, encrypted at rest using Fernet.

    Usage
    - Provide S3 bucket/key and a Fernet key (from env or injected).
    - `read_object()` returns a `(session, etag)` pair. If the object does not
      exist, it returns `(PersistedSession.empty(), None)`.
    - `write_object(session, if_match=None)` writes the encrypted bytes and
      returns the new ETag. When `if_match` is provided, uses a copy-based
      conditional update so the write succeeds only if the current object ETag
      matches `if_match` (optimistic lock).
    - As a `SessionStore`, every `edit()` is a conditional write against the
      ETag last observed, so two processes sharing one object cannot silently
      overwrite each other.

    Environment variables (optional)
    - `AUTH_STATE_BUCKET`: S3 bucket for the session object
    - `AUTH_STATE_KEY`:    S3 key (path) for the session object
    - `AUTH_FERNET_KEY`:   urlsafe base64-encoded key for Fernet
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str = DEFAULT_KEY,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = to_fernet(fernet_key)
        self._etag: Optional[str] = None

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "S3SessionStore":
        env = os.environ if env is None else env
        bucket = env.get(ENV_BUCKET)
        key = env.get(ENV_KEY) or DEFAULT_KEY
        fkey = env.get(ENV_FERNET_KEY)
        if not bucket or not fkey:
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_FERNET_KEY, fkey)] if not val]
            raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")
        return cls(bucket=bucket, key=key, fernet_key=fkey)

    # -------- SessionStore hooks --------
    def _load(self) -> PersistedSession:
        session, etag = self.read_object()
        self._etag = etag
        return session

    def _persist(self, session: PersistedSession) -> None:
        self._etag = self.write_object(session, if_match=self._etag)

    # -------- Object operations --------
    def read_object(self) -> Tuple[PersistedSession, Optional[str]]:
        """Read and decrypt the session from S3.

        Returns: (session, etag)
        - If object not found, returns (PersistedSession.empty(), None).
        Raises:
        - ValueError if decryption fails or content is invalid JSON.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return (PersistedSession.empty(), None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")  # usually quoted string
        return (decrypt_session(self._fernet, body), etag)

    def write_object(self, session: PersistedSession, *, if_match: Optional[str] = None) -> str:
        """Encrypt and write the session to S3; returns the new ETag.

        Raises OptimisticLockError when `if_match` no longer matches the
        destination's ETag.
        """
        ciphertext = encrypt_session(self._fernet, session)

        # First write of a new object: nothing to compare against
        if if_match is None:
            resp = self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
            return str(resp.get("ETag"))

        # S3 PutObject does not support If-Match. Upload to a temporary key,
        # then COPY over the destination with an If-Match precondition.
        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(
                    f"ETag mismatch for s3://{self._obj.bucket}/{self._obj.key}"
                ) from e
            raise
        finally:
            # Best-effort cleanup of temp object
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError as e:
                log.warning(
                    "Failed to delete temporary session object",
                    bucket=self._obj.bucket,
                    key=temp_key,
                    error=str(e),
                )

        # CopyObject nests the new ETag under CopyObjectResult
        return str(resp["CopyObjectResult"]["ETag"])
