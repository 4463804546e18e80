"""LocalStorageGateway 테스트."""

import hashlib
import os
from datetime import UTC, datetime, timedelta

import pytest

from core.exceptions import StorageFailure, StorageObjectNotFound
from service.storage import content_key


def test_content_key_layout():
    data = b"payload"
    digest = hashlib.sha256(data).hexdigest()

    assert content_key(data, "image/png") == f"{digest[:2]}/{digest[2:4]}/{digest}.png"
    assert content_key(data, "application/x-unknown") == f"{digest[:2]}/{digest[2:4]}/{digest}"


def test_put_get_delete(storage):
    stored = storage.put(b"bytes", "text/plain")

    assert stored.bucket == storage.bucket
    assert stored.size == 5
    assert storage.exists(stored.key)
    assert storage.get(stored.key) == b"bytes"

    storage.delete(stored.key)
    assert not storage.exists(stored.key)
    with pytest.raises(StorageObjectNotFound):
        storage.get(stored.key)
    with pytest.raises(StorageObjectNotFound):
        storage.delete(stored.key)


def test_same_bytes_same_key(storage):
    assert storage.put(b"x", "text/plain").key == storage.put(b"x", "text/plain").key


def test_rejects_path_traversal(storage):
    with pytest.raises(StorageFailure):
        storage.get("../outside.txt")


def test_delete_prefix(storage):
    storage.put(b"a", "image/webp", key="thumbnails/f1/a.webp")
    storage.put(b"b", "image/webp", key="thumbnails/f1/b.webp")
    storage.put(b"c", "image/webp", key="thumbnails/f2/c.webp")

    assert storage.delete_prefix("thumbnails/f1") == 2
    assert not storage.exists("thumbnails/f1/a.webp")
    assert storage.exists("thumbnails/f2/c.webp")
    assert storage.delete_prefix("thumbnails/none") == 0


def test_list_objects_under_prefix(storage, settings):
    storage.put(b"a", "image/webp", key="thumbnails/f1/a.webp")
    storage.put(b"b", "image/webp", key="thumbnails/f2/b.webp")
    storage.put(b"c", "image/png")

    path = os.path.join(settings.STORAGE_ROOT, settings.STORAGE_BUCKET, "thumbnails", "f1", "a.webp")
    old = (datetime.now(UTC) - timedelta(days=3)).timestamp()
    os.utime(path, (old, old))

    objects = {o.key: o for o in storage.list_objects("thumbnails")}
    assert set(objects) == {"thumbnails/f1/a.webp", "thumbnails/f2/b.webp"}
    assert objects["thumbnails/f1/a.webp"].size == 1
    assert objects["thumbnails/f1/a.webp"].modified_at < datetime.now(UTC) - timedelta(days=2)
    assert storage.list_objects("thumbnails/none") == []
