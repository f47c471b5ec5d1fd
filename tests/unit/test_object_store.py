"""
Unit tests for the MinIO-backed object store adapter.
"""
from types import SimpleNamespace

import pytest

from stashbox.core.errors import BackendUnavailable
from stashbox.core.object_store import MinioObjectStore, UploadTarget


class FakeMinio:
    """Records calls made through the Minio client API."""

    def __init__(self, name="client"):
        self.name = name
        self.calls = []
        self.fail_with = None

    def _record(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def put_object(self, **kwargs):
        self._record("put_object", **kwargs)
        return SimpleNamespace(version_id="null", etag="abc123")

    def list_objects(self, **kwargs):
        self._record("list_objects", **kwargs)
        return [
            SimpleNamespace(object_name="t/a.txt", version_id="v2", size=3, last_modified=None,
                            etag="e2", is_delete_marker=False),
            SimpleNamespace(object_name="t/a.txt", version_id="v1", size=4, last_modified=None,
                            etag="e1", is_delete_marker=True),
        ]

    def remove_object(self, **kwargs):
        self._record("remove_object", **kwargs)

    def presigned_get_object(self, **kwargs):
        self._record("presigned_get_object", **kwargs)
        return f"http://minio:9000/{kwargs['bucket_name']}/{kwargs['object_name']}?X-Amz-Signature=abc&X-Amz-Expires=60"


class ClientFactory:
    def __init__(self):
        self.clients = []

    def __call__(self, **kwargs):
        client = FakeMinio(name=f"client-{len(self.clients) + 1}")
        self.clients.append(client)
        return client


@pytest.fixture
def factory():
    return ClientFactory()


@pytest.mark.unit
class TestMinioObjectStore:
    """Test call mapping, error wrapping and session refresh."""

    def test_upload_on_unversioned_bucket_uses_etag(self, factory):
        store = MinioObjectStore(client_factory=factory)
        stored = store.upload_bytes(UploadTarget("b", "t/a.txt", "minio:9000"), b"hello", "text/plain")

        assert stored.version_id is None
        assert stored.backend_object_id == "abc123"
        operation, kwargs = factory.clients[0].calls[0]
        assert operation == "put_object"
        assert kwargs["length"] == 5
        assert kwargs["content_type"] == "text/plain"

    def test_list_versions_maps_objects(self, factory):
        store = MinioObjectStore(client_factory=factory)
        versions = store.list_object_versions("b", "t/a.txt")

        assert [v.version_id for v in versions] == ["v2", "v1"]
        assert versions[1].is_delete_marker
        assert store.key_exists("b", "t/a.txt")

    def test_download_authorization_returns_query_token(self, factory):
        store = MinioObjectStore(client_factory=factory)
        authorization = store.get_download_authorization("b", "t/a.txt", 60)

        assert authorization.token == "X-Amz-Signature=abc&X-Amz-Expires=60"
        assert authorization.ttl_seconds == 60

    def test_transport_errors_become_backend_unavailable(self, factory):
        store = MinioObjectStore(client_factory=factory)
        store.authenticate()
        factory.clients[0].fail_with = OSError("connection reset")

        with pytest.raises(BackendUnavailable) as exc_info:
            store.delete_object_version("b", "t/a.txt", "v1")
        assert exc_info.value.retryable

    def test_session_refreshed_after_ttl(self, factory):
        store = MinioObjectStore(session_ttl_seconds=1, client_factory=factory)
        store.authenticate()
        store._authenticated_at -= 5

        store.delete_object_version("b", "t/a.txt", None)

        assert len(factory.clients) == 2
        assert factory.clients[1].calls[0][0] == "remove_object"

    def test_credentials_provider_feeds_factory(self):
        seen = {}

        def factory(**kwargs):
            seen.update(kwargs)
            return FakeMinio()

        store = MinioObjectStore(credentials_provider=lambda: ("ak", "sk", "token"), client_factory=factory)
        store.authenticate()
        assert seen == {"access_key": "ak", "secret_key": "sk", "session_token": "token"}
