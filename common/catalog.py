import json
import logging
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from azure.core import MatchConditions
from azure.core.exceptions import AzureError, HttpResponseError, ResourceModifiedError, ResourceNotFoundError
from azure.data.tables import TableClient, TableEntity, UpdateMode

from common.config import AZURE_CONN_STR, LOCAL_TABLE_DIR, STORAGE_BACKEND
from common.exceptions import CatalogConflict, CatalogNotFound, StoreIOError
from common.job_schema import CatalogPage, CatalogRecord, PipelineConfig, UpdateOutcome

logger = logging.getLogger(__name__)

# Azure Table Storage returns at most 1000 entities per page.
DEFAULT_PAGE_SIZE = 1000

KEY_FIELDS = ("PartitionKey", "RowKey")
ETAG_FIELD = "_etag"


# ------------------------------------------------------------------------------
# LOCAL JSON TABLE
# Used when STORAGE_BACKEND="local". One JSON file per table acts as the table.
# ------------------------------------------------------------------------------

class LocalCatalogStore:
    """Table store over data/tables/<table>.json with per-record etags."""

    def __init__(self, table_name: str, root: Optional[Path] = None, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.table_name = table_name
        self.page_size = page_size
        self.path = Path(root or LOCAL_TABLE_DIR) / f"{table_name}.json"
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read(self) -> List[dict]:
        try:
            content = self.path.read_text() if self.path.exists() else "[]"
        except OSError as e:
            raise StoreIOError(f"Unable to read table {self.table_name}: {e}") from e
        if not content.strip():
            content = "[]"
        return json.loads(content)

    def _write(self, entities: List[dict]) -> None:
        try:
            self.path.write_text(json.dumps(entities, indent=2))
        except OSError as e:
            raise StoreIOError(f"Unable to write table {self.table_name}: {e}") from e

    @staticmethod
    def _to_record(entity: dict) -> CatalogRecord:
        props = {k: v for k, v in entity.items() if k != ETAG_FIELD}
        return CatalogRecord(
            partition_key=props["PartitionKey"],
            row_key=props["RowKey"],
            properties=props,
            etag=entity.get(ETAG_FIELD),
        )

    def insert(self, partition_key: str, row_key: str, **properties) -> CatalogRecord:
        """Adds a record. Records are created outside the photo worker; this is for seeding."""
        entities = self._read()
        if any(e["PartitionKey"] == partition_key and e["RowKey"] == row_key for e in entities):
            raise CatalogConflict(f"Record {partition_key}/{row_key} already exists in {self.table_name}")
        entity = dict(properties, PartitionKey=partition_key, RowKey=row_key)
        entity[ETAG_FIELD] = uuid.uuid4().hex
        entities.append(entity)
        self._write(entities)
        return self._to_record(entity)

    def get(self, partition_key: str, row_key: str) -> Optional[CatalogRecord]:
        for entity in self._read():
            if entity["PartitionKey"] == partition_key and entity["RowKey"] == row_key:
                return self._to_record(entity)
        return None

    def scan_partition(self, partition_key: str, continuation_token: Optional[str] = None) -> CatalogPage:
        # same ordering as the table service: by RowKey within a partition
        matching = sorted(
            (e for e in self._read() if e["PartitionKey"] == partition_key),
            key=lambda e: e["RowKey"],
        )
        start = int(continuation_token or 0)
        end = start + self.page_size
        next_token = str(end) if end < len(matching) else None
        return CatalogPage(
            records=[self._to_record(e) for e in matching[start:end]],
            continuation_token=next_token,
        )

    def conditional_replace(self, record: CatalogRecord) -> CatalogRecord:
        entities = self._read()
        for i, entity in enumerate(entities):
            if entity["PartitionKey"] == record.partition_key and entity["RowKey"] == record.row_key:
                if entity.get(ETAG_FIELD) != record.etag:
                    raise CatalogConflict(
                        f"Record {record.partition_key}/{record.row_key} in {self.table_name} changed since it was read"
                    )
                replaced = dict(record.properties, PartitionKey=record.partition_key, RowKey=record.row_key)
                replaced[ETAG_FIELD] = uuid.uuid4().hex
                entities[i] = replaced
                self._write(entities)
                return self._to_record(replaced)
        raise CatalogConflict(f"Record {record.partition_key}/{record.row_key} no longer exists in {self.table_name}")


# ------------------------------------------------------------------------------
# AZURE TABLE STORAGE
# Used when STORAGE_BACKEND="azure".
# ------------------------------------------------------------------------------

def _get_table_client(table_name: str, conn_str: Optional[str] = None) -> TableClient:
    conn_str = conn_str or AZURE_CONN_STR
    if not conn_str:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return TableClient.from_connection_string(conn_str, table_name=table_name)


class AzureCatalogStore:
    """Trip/pitstop table in Azure Table Storage."""

    def __init__(self, table_name: str, table_client: Optional[TableClient] = None,
                 page_size: int = DEFAULT_PAGE_SIZE):
        self.table_name = table_name
        self.page_size = page_size
        self.table_client = table_client or _get_table_client(table_name)

    @staticmethod
    def _to_record(entity) -> CatalogRecord:
        props = dict(entity)
        return CatalogRecord(
            partition_key=props["PartitionKey"],
            row_key=props["RowKey"],
            properties=props,
            etag=entity.metadata.get("etag"),
        )

    def scan_partition(self, partition_key: str, continuation_token=None) -> CatalogPage:
        try:
            pages = self.table_client.query_entities(
                "PartitionKey eq @pk",
                parameters={"pk": partition_key},
                results_per_page=self.page_size,
            ).by_page(continuation_token=continuation_token)
            records = [self._to_record(e) for e in next(pages, [])]
            next_token = pages.continuation_token
        except AzureError as e:
            raise StoreIOError(f"Unable to scan partition {partition_key} of {self.table_name}: {e}") from e
        return CatalogPage(records=records, continuation_token=next_token)

    def conditional_replace(self, record: CatalogRecord) -> CatalogRecord:
        entity = TableEntity(**record.properties)
        entity["PartitionKey"] = record.partition_key
        entity["RowKey"] = record.row_key
        try:
            result = self.table_client.update_entity(
                entity,
                mode=UpdateMode.REPLACE,
                etag=record.etag,
                match_condition=MatchConditions.IfNotModified,
            )
        except (ResourceModifiedError, ResourceNotFoundError) as e:
            raise CatalogConflict(
                f"Record {record.partition_key}/{record.row_key} in {self.table_name} changed since it was read"
            ) from e
        except HttpResponseError as e:
            if e.status_code == 412:
                raise CatalogConflict(
                    f"Record {record.partition_key}/{record.row_key} in {self.table_name} changed since it was read"
                ) from e
            raise StoreIOError(f"Unable to replace {record.partition_key}/{record.row_key}: {e}") from e
        except AzureError as e:
            raise StoreIOError(f"Unable to replace {record.partition_key}/{record.row_key}: {e}") from e
        return record.model_copy(update={"etag": (result or {}).get("etag")})


def get_catalog_store(table_name: str):
    """Returns the catalog store for STORAGE_BACKEND."""
    if STORAGE_BACKEND == "local":
        return LocalCatalogStore(table_name)
    elif STORAGE_BACKEND == "azure":
        return AzureCatalogStore(table_name)
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {STORAGE_BACKEND}")


# ------------------------------------------------------------------------------
# CATALOG UPDATER
# ------------------------------------------------------------------------------

def iter_partition(store, partition_key: str) -> Iterator[CatalogRecord]:
    """Lazily walks every page of a partition, following continuation tokens."""
    token = None
    while True:
        page = store.scan_partition(partition_key, continuation_token=token)
        yield from page.records
        token = page.continuation_token
        if not token:
            return


def find_record(store, partition_key: str, id_field: str, numeric_id: int) -> Optional[CatalogRecord]:
    # first match in scan order wins if the data holds duplicates
    for record in iter_partition(store, partition_key):
        if record.numeric_value(id_field) == numeric_id:
            return record
    return None


def update_record(store, partition_key: str, numeric_id: int, urls_by_tier: Dict[str, str],
                  config: PipelineConfig, require_match: bool = False) -> UpdateOutcome:
    """
    Points the catalog record's photo URL columns at the new derivatives.

    The record is located by scanning the partition for config.id_field ==
    numeric_id, since that id is not the row key. Only the URL columns of the
    tiers in urls_by_tier are touched, and the replace is conditional on the
    etag read during the scan. A missing record is logged and reported as
    NOT_FOUND unless require_match is set.
    """
    url_fields = config.url_fields()
    unknown = set(urls_by_tier) - set(url_fields)
    if unknown:
        raise ValueError(f"No {config.kind.value} URL column for tiers: {sorted(unknown)}")

    record = find_record(store, partition_key, config.id_field, numeric_id)
    if record is None:
        message = f"No {config.kind.value} with {config.id_field}={numeric_id} in partition {partition_key}"
        if require_match:
            raise CatalogNotFound(message)
        logger.warning(f"{message}; catalog left unchanged")
        return UpdateOutcome.NOT_FOUND

    properties = dict(record.properties)
    for tier_name, blob_name in urls_by_tier.items():
        properties[url_fields[tier_name]] = blob_name

    store.conditional_replace(record.model_copy(update={"properties": properties}))
    logger.info(f"Updated {config.kind.value} {numeric_id} in partition {partition_key}")
    return UpdateOutcome.UPDATED
