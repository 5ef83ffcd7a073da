"""
Tests for artifact storage backends and key layout.
"""

from unittest.mock import MagicMock

import pytest

from qbank.ingest.errors import StorageError
from qbank.ingest.storage import (
    LocalArtifactStore,
    MinioArtifactStore,
    candidates_key,
    get_artifact_store,
    page_key,
    source_key,
)


class TestKeys:
    """Tests for storage key layout."""

    def test_page_key_one_based_padded(self):
        """Page keys should be 1-based and zero padded to three digits."""
        assert page_key("sessions/abc", 0) == "sessions/abc/page-001.png"
        assert page_key("sessions/abc", 41) == "sessions/abc/page-042.png"

    def test_source_key_keeps_extension(self):
        """Source keys should keep the document extension."""
        assert source_key("sessions/abc", "Block 1.PDF") == "sessions/abc/source.pdf"
        assert source_key("sessions/abc", "noext") == "sessions/abc/source.pdf"

    def test_candidates_key(self):
        assert candidates_key("sessions/abc") == "sessions/abc/candidates.json"


class TestLocalArtifactStore:
    """Tests for the directory-backed store."""

    def test_put_get_exists(self, tmp_path):
        """Stored bytes should be readable back."""
        store = LocalArtifactStore(tmp_path)
        key = page_key("sessions/s1", 0)
        assert not store.exists(key)
        store.put(key, b"png")
        assert store.exists(key)
        assert store.get(key) == b"png"
        assert store.url_for(key) is None

    def test_put_overwrites(self, tmp_path):
        """Putting a key twice should overwrite, not duplicate."""
        store = LocalArtifactStore(tmp_path)
        store.put("sessions/s1/page-001.png", b"one")
        store.put("sessions/s1/page-001.png", b"two")
        assert store.get("sessions/s1/page-001.png") == b"two"
        assert len(list((tmp_path / "sessions" / "s1").iterdir())) == 1

    def test_missing_key(self, tmp_path):
        """Reading a missing key should raise StorageError."""
        with pytest.raises(StorageError):
            LocalArtifactStore(tmp_path).get("sessions/none/page-001.png")

    def test_rejects_escaping_keys(self, tmp_path):
        """Keys must stay inside the artifact directory."""
        with pytest.raises(StorageError) as exc_info:
            LocalArtifactStore(tmp_path / "artifacts").put("../outside.png", b"x")
        assert not exc_info.value.retryable


class TestMinioArtifactStore:
    """Tests for the MinIO backend with a mocked client."""

    def test_put_creates_bucket(self):
        """The bucket should be created on first use."""
        client = MagicMock()
        client.bucket_exists.return_value = False
        store = MinioArtifactStore(bucket="question-images", client=client)

        store.put("sessions/s1/page-001.png", b"png", content_type="image/png")
        store.put("sessions/s1/page-002.png", b"png", content_type="image/png")

        client.make_bucket.assert_called_once_with("question-images")
        assert client.put_object.call_count == 2
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["object_name"] == "sessions/s1/page-002.png"
        assert kwargs["length"] == 3
        assert kwargs["content_type"] == "image/png"

    def test_get_releases_connection(self):
        """Reads should close and release the response."""
        client = MagicMock()
        response = MagicMock()
        response.read.return_value = b"data"
        client.get_object.return_value = response
        store = MinioArtifactStore(bucket="b", client=client)

        assert store.get("k") == b"data"
        response.close.assert_called_once()
        response.release_conn.assert_called_once()

    def test_url_for_presigns(self):
        """URLs should be presigned GET URLs."""
        client = MagicMock()
        client.presigned_get_object.return_value = "https://minio.test/b/k?sig"
        store = MinioArtifactStore(bucket="b", client=client)
        assert store.url_for("k") == "https://minio.test/b/k?sig"

    def test_os_error_mapped(self):
        """Transport failures should surface as StorageError."""
        client = MagicMock()
        client.bucket_exists.return_value = True
        client.put_object.side_effect = OSError("connection reset")
        store = MinioArtifactStore(bucket="b", client=client)
        with pytest.raises(StorageError):
            store.put("k", b"x")


class TestGetArtifactStore:
    """Tests for backend selection."""

    def test_local(self):
        assert isinstance(get_artifact_store("local"), LocalArtifactStore)

    def test_unknown(self):
        with pytest.raises(ValueError):
            get_artifact_store("ftp")
