"""
Unit tests for the Supabase Storage REST client and artifact uploader.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from genloop.core.errors import FatalHttp
from genloop.core.models import ImageBlob
from genloop.core.quota import StorageQuotaManager
from genloop.core.transport import RequestSpec
from genloop.storage.object_store import LIST_PAGE_SIZE, SupabaseObjectStore, parse_timestamp
from genloop.storage.uploader import ArtifactUploader, extension_for

BASE_URL = "https://project.supabase.co"


def _json_response(payload):
    response = Mock()
    response.json.return_value = payload
    return response


def _file(name, size=10, created_at="2024-01-01T00:00:00Z"):
    return {"name": name, "id": f"id-{name}", "created_at": created_at, "metadata": {"size": size}}


class TestParseTimestamp:
    """Test parse_timestamp."""

    def test_zulu(self):
        assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2024-03-01T10:00:00").tzinfo == timezone.utc

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_missing_or_invalid_is_oldest(self, value):
        assert parse_timestamp(value) == datetime(1970, 1, 1, tzinfo=timezone.utc)


class TestSupabaseObjectStore:
    """Test SupabaseObjectStore."""

    def setup_method(self):
        self.transport = Mock()
        self.store = SupabaseObjectStore(self.transport, BASE_URL + "/", "secret", bucket="photos")

    def _sent(self, index=0) -> RequestSpec:
        return self.transport.send.call_args_list[index][0][0]

    def test_init_validation(self):
        with pytest.raises(ValueError, match="base_url"):
            SupabaseObjectStore(self.transport, "", "key")
        with pytest.raises(ValueError, match="api_key"):
            SupabaseObjectStore(self.transport, BASE_URL, " ")

    def test_public_url(self):
        assert self.store.public_url("batch/a.jpg") == (
            f"{BASE_URL}/storage/v1/object/public/photos/batch/a.jpg"
        )

    def test_upload_posts(self):
        self.store.upload("batch/a.jpg", b"bytes", "image/jpeg")

        spec = self._sent()
        assert spec.method == "POST"
        assert spec.url == f"{BASE_URL}/storage/v1/object/photos/batch/a.jpg"
        assert spec.data == b"bytes"
        assert spec.headers["Authorization"] == "Bearer secret"
        assert spec.headers["apikey"] == "secret"
        assert spec.headers["Content-Type"] == "image/jpeg"

    @pytest.mark.parametrize("status", [400, 409])
    def test_upload_conflict_overwrites(self, status):
        self.transport.send.side_effect = [FatalHttp(status), Mock()]

        self.store.upload("batch/a.jpg", b"bytes")

        assert self.transport.send.call_count == 2
        assert self._sent(1).method == "PUT"
        assert self._sent(1).url == self._sent(0).url

    def test_upload_other_error_raised(self):
        self.transport.send.side_effect = FatalHttp(403)

        with pytest.raises(FatalHttp):
            self.store.upload("batch/a.jpg", b"bytes")
        assert self.transport.send.call_count == 1

    def test_download(self):
        response = Mock()
        response.content = b"{}"
        self.transport.send.return_value = response

        assert self.store.download("_templates/config.json") == b"{}"
        spec = self._sent()
        assert spec.method == "GET"
        assert spec.url == f"{BASE_URL}/storage/v1/object/photos/_templates/config.json"
        assert spec.headers["Authorization"] == "Bearer secret"

    @pytest.mark.parametrize("status", [400, 404])
    def test_download_missing_is_none(self, status):
        self.transport.send.side_effect = FatalHttp(status)

        assert self.store.download("_templates/config.json") is None

    def test_download_other_error_raised(self):
        self.transport.send.side_effect = FatalHttp(401)

        with pytest.raises(FatalHttp):
            self.store.download("_templates/config.json")

    def test_list_single_page(self):
        self.transport.send.return_value = _json_response([
            _file("a.jpg", 100, "2024-01-02T00:00:00Z"),
            _file("b.jpg", 200),
        ])

        objects = self.store.list_objects()

        assert [(o.key, o.size_bytes) for o in objects] == [("a.jpg", 100), ("b.jpg", 200)]
        assert objects[0].created_at == datetime(2024, 1, 2, tzinfo=timezone.utc)
        body = self._sent().json
        assert body["prefix"] == ""
        assert body["limit"] == LIST_PAGE_SIZE
        assert body["offset"] == 0

    def test_list_descends_into_folders(self):
        self.transport.send.side_effect = [
            _json_response([{"name": "batch", "id": None, "metadata": None}, _file("root.jpg")]),
            _json_response([_file("a.jpg")]),
        ]

        keys = [o.key for o in self.store.list_objects()]

        assert keys == ["batch/a.jpg", "root.jpg"]
        assert self._sent(1).json["prefix"] == "batch/"

    def test_list_paginates(self):
        first_page = [_file(f"f{i}.jpg", 1) for i in range(LIST_PAGE_SIZE)]
        self.transport.send.side_effect = [
            _json_response(first_page),
            _json_response([_file("last.jpg", 1)]),
        ]

        objects = self.store.list_objects()

        assert len(objects) == LIST_PAGE_SIZE + 1
        assert self._sent(1).json["offset"] == LIST_PAGE_SIZE

    def test_list_missing_metadata_size(self):
        self.transport.send.return_value = _json_response([
            {"name": "odd.jpg", "id": "x", "metadata": {}, "created_at": None}
        ])

        objects = self.store.list_objects()

        assert objects[0].size_bytes == 0

    def test_delete(self):
        self.store.delete_objects(["a.jpg", "b.jpg"])

        spec = self._sent()
        assert spec.method == "DELETE"
        assert spec.url == f"{BASE_URL}/storage/v1/object/photos"
        assert spec.json == {"prefixes": ["a.jpg", "b.jpg"]}

    def test_delete_nothing(self):
        self.store.delete_objects([])
        self.transport.send.assert_not_called()


class TestArtifactUploader:
    """Test ArtifactUploader."""

    def test_extension_for(self):
        assert extension_for("image/png") == "png"
        assert extension_for("image/jpeg") == "jpg"
        assert extension_for("application/x-unknown") == "bin"

    def test_quota_checked_before_write(self):
        order = []
        store = Mock()
        store.upload.side_effect = lambda *args: order.append("upload")
        store.public_url.return_value = "https://cdn/batch/a_batch.png"
        quota = Mock(spec=StorageQuotaManager)
        quota.before_upload.side_effect = lambda size: order.append(("quota", size))

        uploader = ArtifactUploader(store, quota, key_prefix="batch/")
        receipt = uploader.upload_artifact("a", ImageBlob(b"12345", "image/png"))

        assert order == [("quota", 5), "upload"]
        store.upload.assert_called_once_with("batch/a_batch.png", b"12345", "image/png")
        assert receipt.key == "batch/a_batch.png"
        assert receipt.size_bytes == 5
        assert receipt.public_url == "https://cdn/batch/a_batch.png"
