# quiz_storage.py
# -----------------------------------------------------------------------------
# Blob store for published course content (quiz JSON documents).
#   download(bucket, path) -> bytes     raises NotFound / StoreUnavailable
# Backends:
#   - S3-compatible object storage (R2/S3/MinIO) via boto3
#   - local directory tree: <root>/<bucket>/<path>  (dev & tests)
# -----------------------------------------------------------------------------

import os
from pathlib import Path
from typing import Any, Callable, Optional

from quiz_errors import BadRequest, NotFound, StoreUnavailable

QUIZ_STORAGE_BACKEND = (os.getenv("QUIZ_STORAGE_BACKEND") or "").strip().lower()
QUIZ_STORAGE_ENDPOINT = (os.getenv("QUIZ_STORAGE_ENDPOINT") or "").strip() or None
QUIZ_STORAGE_ACCESS_KEY = os.getenv("QUIZ_STORAGE_ACCESS_KEY")
QUIZ_STORAGE_SECRET_KEY = os.getenv("QUIZ_STORAGE_SECRET_KEY")
QUIZ_STORAGE_REGION = (os.getenv("QUIZ_STORAGE_REGION") or "auto").strip()
QUIZ_LOCAL_STORAGE_ROOT = os.getenv("QUIZ_LOCAL_STORAGE_ROOT") or "./storage"

_MISSING_CODES = ("404", "NoSuchKey", "NotFound", "NoSuchBucket")


def safe_object_path(*parts: str) -> str:
    """Join storage path segments; rejects absolute paths and '..' traversal."""
    segs = []
    for part in parts:
        p = str(part or "").strip()
        if p.startswith("/") or "\\" in p:
            raise BadRequest("Invalid content path")
        for s in p.split("/"):
            if not s or s == ".":
                continue
            if s == "..":
                raise BadRequest("Invalid content path")
            segs.append(s)
    if not segs:
        raise BadRequest("Invalid content path")
    return "/".join(segs)


# ------------------------------- S3 / R2 ---------------------------------------
def _get_s3_client() -> Any:
    import boto3

    return boto3.client(
        "s3",
        endpoint_url=QUIZ_STORAGE_ENDPOINT,
        aws_access_key_id=QUIZ_STORAGE_ACCESS_KEY,
        aws_secret_access_key=QUIZ_STORAGE_SECRET_KEY,
        region_name=QUIZ_STORAGE_REGION,
    )


def make_s3_download(client: Optional[Any] = None) -> Callable[[str, str], bytes]:
    from botocore.exceptions import BotoCoreError, ClientError

    s3 = client or _get_s3_client()

    def download(bucket: str, path: str) -> bytes:
        try:
            resp = s3.get_object(Bucket=bucket, Key=path)
            return resp["Body"].read()
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code")
            if str(code) in _MISSING_CODES:
                raise NotFound("Content not found", path=path)
            print(f"[quiz_storage] get_object failed for {bucket}/{path}: {code}")
            raise StoreUnavailable()
        except BotoCoreError as e:
            print(f"[quiz_storage] storage unreachable for {bucket}/{path}: {e}")
            raise StoreUnavailable()

    return download


# ------------------------------- local files -----------------------------------
def make_local_download(root: Optional[str] = None) -> Callable[[str, str], bytes]:
    base = Path(root or QUIZ_LOCAL_STORAGE_ROOT).resolve()

    def download(bucket: str, path: str) -> bytes:
        target = (base / safe_object_path(bucket) / safe_object_path(path)).resolve()
        if base not in target.parents:
            raise BadRequest("Invalid content path")
        try:
            with target.open("rb") as fh:
                return fh.read()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound("Content not found", path=path)
        except OSError as e:
            print(f"[quiz_storage] failed to read '{target}': {e}")
            raise StoreUnavailable()

    return download


def make_download(backend: Optional[str] = None) -> Callable[[str, str], bytes]:
    """Pick the configured backend: explicit QUIZ_STORAGE_BACKEND, else s3 when an endpoint is set."""
    choice = (backend or QUIZ_STORAGE_BACKEND or ("s3" if QUIZ_STORAGE_ENDPOINT else "local")).lower()
    if choice == "s3":
        print(f"[quiz_storage] using S3 endpoint {QUIZ_STORAGE_ENDPOINT or '(aws default)'}")
        return make_s3_download()
    if choice == "local":
        print(f"[quiz_storage] using local root {Path(QUIZ_LOCAL_STORAGE_ROOT).resolve()}")
        return make_local_download()
    raise ValueError(f"Unsupported QUIZ_STORAGE_BACKEND '{choice}'")


__all__ = ["safe_object_path", "make_s3_download", "make_local_download", "make_download"]
