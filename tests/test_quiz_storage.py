import io

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from quiz_errors import BadRequest, NotFound, StoreUnavailable
from quiz_storage import make_local_download, make_s3_download, safe_object_path


class FakeS3:
    def __init__(self, objects=None, error=None):
        self.objects = objects or {}
        self.error = error
        self.calls = []

    def get_object(self, Bucket, Key):
        self.calls.append((Bucket, Key))
        if self.error:
            raise self.error
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


def test_safe_object_path_joins_segments():
    assert safe_object_path("courses/v3/", "module-01//quiz.json") == "courses/v3/module-01/quiz.json"
    assert safe_object_path("./a", "b") == "a/b"


@pytest.mark.parametrize("parts", [
    ("courses/v3", "../secrets.json"),
    ("/etc", "passwd"),
    ("courses", "a\\b.json"),
    ("", ""),
])
def test_safe_object_path_rejects_traversal(parts):
    with pytest.raises(BadRequest):
        safe_object_path(*parts)


def test_s3_download_reads_body():
    s3 = FakeS3({("inst-4", "v1/quiz.json"): b'{"title": "x"}'})

    assert make_s3_download(client=s3)("inst-4", "v1/quiz.json") == b'{"title": "x"}'
    assert s3.calls == [("inst-4", "v1/quiz.json")]


def test_s3_missing_key_is_not_found():
    with pytest.raises(NotFound):
        make_s3_download(client=FakeS3())("inst-4", "v1/missing.json")


def test_s3_access_denied_is_store_unavailable():
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "GetObject")

    with pytest.raises(StoreUnavailable):
        make_s3_download(client=FakeS3(error=error))("inst-4", "v1/quiz.json")


def test_s3_unreachable_endpoint_is_store_unavailable():
    error = EndpointConnectionError(endpoint_url="https://r2.example.invalid")

    with pytest.raises(StoreUnavailable):
        make_s3_download(client=FakeS3(error=error))("inst-4", "v1/quiz.json")


def test_local_download_reads_bucket_tree(tmp_path):
    target = tmp_path / "inst-4" / "v1" / "quiz.json"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"{}")

    download = make_local_download(str(tmp_path))

    assert download("inst-4", "v1/quiz.json") == b"{}"
    with pytest.raises(NotFound):
        download("inst-4", "v1/other.json")
    with pytest.raises(NotFound):
        download("inst-4", "v1")
    with pytest.raises(BadRequest):
        download("inst-4", "../../outside.json")
