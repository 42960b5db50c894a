import base64
import binascii
import json
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from common.exceptions import MalformedJobError

# Catalog ids are Int32 columns in the trip/pitstop tables.
MAX_CATALOG_ID = 2**31 - 1

_ROW_KEY_PATTERN = re.compile(r"\s*\+?[0-9]+\s*")


class CatalogKind(str, Enum):
    TRIP = "trip"
    PITSTOP = "pitstop"


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    NOT_FOUND = "not_found"


class Job(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    # where the uploaded original lives in the photos container
    source_blob_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("source_blob_name", "sourceBlobName", "PictureUri"),
    )
    partition_key: str = Field(
        min_length=1,
        validation_alias=AliasChoices("partition_key", "partitionKey", "PartitionKey"),
    )
    row_key: str = Field(validation_alias=AliasChoices("row_key", "rowKey", "RowKey"))

    @field_validator("row_key")
    @classmethod
    def _row_key_is_catalog_id(cls, value: str) -> str:
        if not _ROW_KEY_PATTERN.fullmatch(value):
            raise ValueError(f"row key {value!r} is not a decimal integer")
        number = int(value)
        if not 0 < number <= MAX_CATALOG_ID:
            raise ValueError(f"row key {value!r} is not a positive catalog id")
        return value

    @property
    def numeric_id(self) -> int:
        return int(self.row_key)


class SizeTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Literal["small", "medium", "large"]
    tag: str                 # value of the "type" metadata entry
    max_side: int = Field(gt=0)
    url_field: str           # catalog column that receives the blob name
    replaces_original: bool = False


class PipelineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: CatalogKind
    container_name: str
    table_name: str
    queue_name: str
    id_field: str
    tiers: List[SizeTier]

    @model_validator(mode="after")
    def _check_tiers(self) -> "PipelineConfig":
        if not self.tiers:
            raise ValueError("at least one size tier is required")
        names = [t.name for t in self.tiers]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate tier names: {names}")
        replacing = [t for t in self.tiers if t.replaces_original]
        if len(replacing) != 1 or not self.tiers[-1].replaces_original:
            raise ValueError("exactly one tier must replace the original and it must run last")
        return self

    def url_fields(self) -> Dict[str, str]:
        return {t.name: t.url_field for t in self.tiers}


class Derivative(BaseModel):
    blob_name: str
    tier: SizeTier
    data: bytes
    metadata: Dict[str, str]
    width: int
    height: int


class CatalogRecord(BaseModel):
    partition_key: str
    row_key: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    etag: Optional[str] = None

    def numeric_value(self, field: str) -> Optional[int]:
        # Int64 columns come back wrapped in an EntityProperty
        value = getattr(self.properties.get(field), "value", self.properties.get(field))
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, float) and not value.is_integer():
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class CatalogPage(BaseModel):
    records: List[CatalogRecord]
    continuation_token: Optional[Any] = None


class JobResult(BaseModel):
    job: Job
    kind: CatalogKind
    derivatives: Dict[str, str]
    outcome: UpdateOutcome


def decode_job(raw: Union[bytes, str, Dict[str, Any]]) -> Job:
    """
    Turns a queue payload into a Job.

    Accepts an already-parsed dict, JSON text, or base64-encoded JSON (the
    encoding Functions-style producers use for queue messages).
    """
    if isinstance(raw, dict):
        payload = raw
    else:
        text = raw
        if isinstance(raw, bytes):
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedJobError(f"Job payload is not UTF-8: {e}") from e
        if not isinstance(text, str):
            raise MalformedJobError(f"Unsupported job payload type: {type(raw).__name__}")

        text = text.strip()
        if not text.startswith("{"):
            try:
                text = base64.b64decode(text, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError, ValueError) as e:
                raise MalformedJobError(f"Job payload is neither JSON nor base64 JSON: {e}") from e

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedJobError(f"Job payload is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedJobError("Job payload must be a JSON object")

    try:
        return Job.model_validate(payload)
    except ValidationError as e:
        raise MalformedJobError(f"Invalid job payload: {e}") from e
