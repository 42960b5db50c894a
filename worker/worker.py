import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from common.catalog import find_record, get_catalog_store, update_record
from common.config import LOG_LEVEL, MAX_DEQUEUE_COUNT, PIPELINES, POLL_INTERVAL, REQUIRE_CATALOG_MATCH, WORKER_KINDS
from common.exceptions import MalformedJobError, StoreIOError
from common.job_schema import CatalogKind, Job, JobResult, PipelineConfig, decode_job
from common.message_queue import QueueMessage, get_queue
from common.pipeline import DerivativePipeline, delete_original
from common.storage import get_blob_store

logger = logging.getLogger(__name__)

POISON_SUFFIX = "-poison"


def resolve_source(job: Job, pipeline_config: PipelineConfig, blob_store, catalog_store) -> str:
    """
    Picks the blob to read pixels from.

    Normally that is the job's source. When a job is redelivered after the
    original was already replaced, the catalog record's largest derivative
    stands in for it, provided its "original" metadata names the same source.
    """
    if blob_store.exists(job.source_blob_name):
        return job.source_blob_name

    record = find_record(catalog_store, job.partition_key, pipeline_config.id_field, job.numeric_id)
    previous = record.properties.get(pipeline_config.tiers[-1].url_field) if record else None
    if previous and blob_store.exists(previous):
        if blob_store.get_metadata(previous).get("original") == job.source_blob_name:
            logger.info(f"Source {job.source_blob_name} was already replaced; rebuilding from {previous}")
            return previous

    raise StoreIOError(f"Source blob {job.source_blob_name} does not exist")


def process_job(raw, pipeline_config: PipelineConfig, blob_store, catalog_store,
                require_match: bool = False) -> JobResult:
    """
    Runs one photo job end to end: decode, build every size tier, point the
    catalog record at the new blobs, then delete the original.

    Any error aborts the remaining steps. Derivatives already written are
    left in place, and so is the original until the catalog step has
    returned.
    """
    job = decode_job(raw)
    kind = pipeline_config.kind.value
    logger.info(f"Resizing {kind} image: {job.source_blob_name}")

    read_from = resolve_source(job, pipeline_config, blob_store, catalog_store)
    derivatives = DerivativePipeline(pipeline_config, blob_store).run(job, read_from=read_from)
    outcome = update_record(
        catalog_store,
        job.partition_key,
        job.numeric_id,
        derivatives,
        pipeline_config,
        require_match=require_match,
    )
    delete_original(blob_store, job.source_blob_name)

    names = ", ".join(f"{tier}={name}" for tier, name in derivatives.items())
    logger.info(f"Processed {kind} image {job.source_blob_name} ({outcome.value}): {names}")
    return JobResult(job=job, kind=pipeline_config.kind, derivatives=derivatives, outcome=outcome)


@dataclass
class QueueLane:
    """Everything needed to drain one catalog kind's queue."""
    config: PipelineConfig
    queue: Any
    poison_queue: Any
    blob_store: Any
    catalog_store: Any
    max_dequeue_count: int = MAX_DEQUEUE_COUNT
    require_match: bool = REQUIRE_CATALOG_MATCH


def handle_message(message: QueueMessage, lane: QueueLane) -> Optional[JobResult]:
    """
    Processes one queue message and settles it.

    Success deletes the message. On failure the message stays for
    redelivery until it has been dequeued max_dequeue_count times (or can
    never decode), then it is moved to the poison queue.
    """
    try:
        result = process_job(
            message.content,
            lane.config,
            lane.blob_store,
            lane.catalog_store,
            require_match=lane.require_match,
        )
    except Exception as e:
        logger.exception(f"Failed {lane.config.kind.value} message {message.id} "
                         f"(attempt {message.dequeue_count}): {e}")
        if isinstance(e, MalformedJobError) or message.dequeue_count >= lane.max_dequeue_count:
            lane.poison_queue.send(message.content)
            lane.queue.delete(message)
            logger.warning(f"Moved message {message.id} to {lane.config.queue_name}{POISON_SUFFIX}")
        return None

    lane.queue.delete(message)
    return result


def build_lanes(kinds: Iterable[str]) -> List[QueueLane]:
    lanes = []
    for name in kinds:
        config = PIPELINES[CatalogKind(name)]
        lanes.append(QueueLane(
            config=config,
            queue=get_queue(config.queue_name),
            poison_queue=get_queue(config.queue_name + POISON_SUFFIX),
            blob_store=get_blob_store(config.container_name),
            catalog_store=get_catalog_store(config.table_name),
        ))
    return lanes


def poll_once(lanes: Iterable[QueueLane]) -> int:
    """Takes at most one message from each lane. Returns how many were handled."""
    handled = 0
    for lane in lanes:
        message = lane.queue.receive()
        if message is None:
            continue
        handle_message(message, lane)
        handled += 1
    return handled


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    lanes = build_lanes(WORKER_KINDS)
    logger.info(f"Worker started for {', '.join(lane.config.queue_name for lane in lanes)}...")
    while True:
        if not poll_once(lanes):
            time.sleep(POLL_INTERVAL)


if __name__ == "__main__":
    main()
