import os
import re
from pathlib import Path

from .errors import ContentStoreError
from .util import sha256_hex

_SAFE_NAME = re.compile(r'[^A-Za-z0-9._-]+')


def safe_filename(filename: str) -> str:
    name = _SAFE_NAME.sub('_', os.path.basename(filename or '')).strip('._')
    return name or 'certificate'


class ContentAddresser:
    """Stores an artifact and returns its content hash."""

    def upload(self, data: bytes, filename: str) -> str:
        raise NotImplementedError


class LocalContentAddresser(ContentAddresser):
    """Content-addressed directory: each artifact is written once under its sha256."""

    def __init__(self, root: str):
        self.root = Path(root)

    def upload(self, data: bytes, filename: str) -> str:
        digest = sha256_hex(data)
        path = self.root / digest
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                tmp = path.with_suffix('.tmp')
                tmp.write_bytes(data)
                tmp.replace(path)
        except OSError as e:
            raise ContentStoreError(f"cannot store artifact: {e}") from e
        return digest

    def read(self, content_hash: str) -> bytes:
        return (self.root / content_hash).read_bytes()


class PinataContentAddresser(ContentAddresser):
    """Pins the artifact to IPFS through Pinata and returns the CID."""

    def __init__(self, jwt: str, api_url: str, timeout: float = 30.0):
        if not jwt:
            raise ValueError("PINATA_JWT required for pinata content backend")
        self.jwt = jwt
        self.api_url = api_url
        self.timeout = timeout

    def upload(self, data: bytes, filename: str) -> str:
        import requests

        headers = {"Authorization": f"Bearer {self.jwt}"}
        files = {"file": (safe_filename(filename), data)}
        try:
            r = requests.post(self.api_url, headers=headers, files=files, timeout=self.timeout)
            r.raise_for_status()
            return r.json()["IpfsHash"]
        except requests.RequestException as e:
            raise ContentStoreError(f"Pinata upload failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise ContentStoreError(f"Pinata returned an unexpected response: {e}") from e


class S3ContentAddresser(ContentAddresser):
    """Writes each artifact as an object keyed by its sha256.
    Requires a bucket the service can PutObject into.
    """

    def __init__(self, bucket: str, prefix: str):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"

    def upload(self, data: bytes, filename: str) -> str:
        try:
            import boto3
            from botocore.exceptions import BotoCoreError, ClientError
        except ImportError as e:
            raise RuntimeError("boto3 required for the S3 content backend. Install the s3 extra") from e

        digest = sha256_hex(data)
        s3 = boto3.client("s3")
        try:
            s3.put_object(
                Bucket=self.bucket,
                Key=f"{self.prefix}{digest}",
                Body=data,
                ContentType="application/octet-stream",
                Metadata={"filename": safe_filename(filename)},
            )
        except (BotoCoreError, ClientError) as e:
            raise ContentStoreError(f"S3 upload failed: {e}") from e
        return digest


def get_content_addresser() -> ContentAddresser:
    from . import config
    backend = config.CONTENT_BACKEND
    if backend == "pinata":
        return PinataContentAddresser(jwt=config.PINATA_JWT, api_url=config.PINATA_API_URL)
    if backend == "s3":
        if not config.S3_BUCKET:
            raise ValueError("S3_BUCKET required for s3 content backend")
        return S3ContentAddresser(bucket=config.S3_BUCKET, prefix=config.S3_PREFIX)
    return LocalContentAddresser(config.CONTENT_DIR)
