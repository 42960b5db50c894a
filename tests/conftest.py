import io

import pytest
from PIL import Image

from common.catalog import LocalCatalogStore
from common.config import PITSTOP_PIPELINE, TRIP_PIPELINE
from common.message_queue import LocalQueue
from common.storage import LocalBlobStore


def make_image_bytes(width, height, fmt="JPEG", mode="RGB", color=(200, 80, 40)):
    img = Image.new(mode, (width, height), color if mode != "L" else 128)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def image_size(data):
    with Image.open(io.BytesIO(data)) as img:
        return img.size, img.format


@pytest.fixture
def blob_store(tmp_path):
    yield LocalBlobStore("photos", root=tmp_path / "blobs")


@pytest.fixture
def pitstop_table(tmp_path):
    yield LocalCatalogStore(PITSTOP_PIPELINE.table_name, root=tmp_path / "tables")


@pytest.fixture
def trip_table(tmp_path):
    yield LocalCatalogStore(TRIP_PIPELINE.table_name, root=tmp_path / "tables")


@pytest.fixture
def queue(tmp_path):
    yield LocalQueue("pitstopqueue", root=tmp_path / "queues")


@pytest.fixture
def poison_queue(tmp_path):
    yield LocalQueue("pitstopqueue-poison", root=tmp_path / "queues")


@pytest.fixture
def landscape_jpeg():
    yield make_image_bytes(2000, 1000)
