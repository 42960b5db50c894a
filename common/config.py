import os
from pathlib import Path

from common.job_schema import CatalogKind, PipelineConfig, SizeTier

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: local / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")

LOCAL_DATA_DIR = Path(os.getenv("LOCAL_DATA_DIR", str(BASE_DIR / "data")))
LOCAL_BLOB_DIR = LOCAL_DATA_DIR / "blobs"
LOCAL_TABLE_DIR = LOCAL_DATA_DIR / "tables"
LOCAL_QUEUE_DIR = LOCAL_DATA_DIR / "queues"

PHOTOS_CONTAINER = os.getenv("PHOTOS_CONTAINER", "photos")
TRIP_TABLE = os.getenv("TRIP_TABLE", "trip")
PITSTOP_TABLE = os.getenv("PITSTOP_TABLE", "pitstop")
TRIP_QUEUE = os.getenv("TRIP_QUEUE", "tripqueue")
PITSTOP_QUEUE = os.getenv("PITSTOP_QUEUE", "pitstopqueue")

POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "2"))  # seconds
MAX_DEQUEUE_COUNT = int(os.getenv("MAX_DEQUEUE_COUNT", "5"))
WORKER_KINDS = [k.strip() for k in os.getenv("WORKER_KINDS", "trip,pitstop").split(",") if k.strip()]
REQUIRE_CATALOG_MATCH = os.getenv("REQUIRE_CATALOG_MATCH", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SMALL_SIDE = 270
MEDIUM_SIDE = 500
LARGE_SIDE = 800

TRIP_PIPELINE = PipelineConfig(
    kind=CatalogKind.TRIP,
    container_name=PHOTOS_CONTAINER,
    table_name=TRIP_TABLE,
    queue_name=TRIP_QUEUE,
    id_field="TripId",
    tiers=[
        SizeTier(name="small", tag="small", max_side=SMALL_SIDE, url_field="MainPhotoSmallUrl"),
        SizeTier(name="large", tag="big", max_side=LARGE_SIDE, url_field="MainPhotoUrl", replaces_original=True),
    ],
)

PITSTOP_PIPELINE = PipelineConfig(
    kind=CatalogKind.PITSTOP,
    container_name=PHOTOS_CONTAINER,
    table_name=PITSTOP_TABLE,
    queue_name=PITSTOP_QUEUE,
    id_field="PitstopId",
    tiers=[
        SizeTier(name="small", tag="small", max_side=SMALL_SIDE, url_field="PhotoSmallUrl"),
        SizeTier(name="medium", tag="medium", max_side=MEDIUM_SIDE, url_field="PhotoMediumUrl"),
        SizeTier(name="large", tag="big", max_side=LARGE_SIDE, url_field="PhotoLargeUrl", replaces_original=True),
    ],
)

PIPELINES = {
    CatalogKind.TRIP: TRIP_PIPELINE,
    CatalogKind.PITSTOP: PITSTOP_PIPELINE,
}
