import json
import logging
from unittest import mock

import pytest

from common.config import PITSTOP_PIPELINE, TRIP_PIPELINE
from common.exceptions import CatalogConflict, CatalogNotFound, DecodeError, MalformedJobError, StoreIOError
from common.job_schema import UpdateOutcome
from worker import worker

from .conftest import image_size


def _payload(row_key='42', source='upload-1.jpg', partition='user-1'):
    return json.dumps({'sourceBlobName': source, 'partitionKey': partition, 'rowKey': row_key})


@pytest.fixture
def seeded(blob_store, pitstop_table, landscape_jpeg):
    blob_store.put('upload-1.jpg', landscape_jpeg)
    pitstop_table.insert('user-1', 'a', PitstopId=41, Title='Reykjavik')
    pitstop_table.insert('user-1', 'b', PitstopId=42, Title='Vik')
    yield blob_store, pitstop_table


def test_process_pitstop_job_end_to_end(seeded):
    blob_store, table = seeded

    result = worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, table)

    assert result.outcome == UpdateOutcome.UPDATED
    assert result.job.numeric_id == 42
    names = result.derivatives
    assert [blob_store.get_metadata(names[t])['type'] for t in ('small', 'medium', 'large')] == [
        'small', 'medium', 'big',
    ]
    assert not blob_store.exists('upload-1.jpg')
    assert image_size(blob_store.get(names['large']))[0] == (800, 400)

    props = table.get('user-1', 'b').properties
    assert props['PhotoSmallUrl'] == names['small']
    assert props['PhotoMediumUrl'] == names['medium']
    assert props['PhotoLargeUrl'] == names['large']
    assert 'PhotoSmallUrl' not in table.get('user-1', 'a').properties


def test_redelivered_job_rebuilds_from_previous_large(seeded):
    blob_store, table = seeded

    first = worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, table)
    second = worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, table)

    assert second.outcome == UpdateOutcome.UPDATED
    assert set(first.derivatives.values()).isdisjoint(second.derivatives.values())
    props = table.get('user-1', 'b').properties
    assert props['PhotoSmallUrl'] == second.derivatives['small']
    assert props['PhotoMediumUrl'] == second.derivatives['medium']
    assert props['PhotoLargeUrl'] == second.derivatives['large']
    # first run's blobs are orphaned, not deleted
    for name in first.derivatives.values():
        assert blob_store.exists(name)
    assert blob_store.get_metadata(second.derivatives['small'])['original'] == 'upload-1.jpg'
    assert image_size(blob_store.get(second.derivatives['small']))[0] == (270, 135)


def test_original_survives_until_catalog_is_updated(seeded):
    blob_store, table = seeded
    real_replace = table.conditional_replace
    seen = []

    def replace_and_check_original(record):
        seen.append(blob_store.exists('upload-1.jpg'))
        return real_replace(record)

    with mock.patch.object(table, 'conditional_replace', side_effect=replace_and_check_original):
        worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, table)

    assert seen == [True]
    assert not blob_store.exists('upload-1.jpg')


@pytest.mark.parametrize('method, error', [
    ('conditional_replace', CatalogConflict('someone else wrote the record')),
    ('scan_partition', StoreIOError('table unavailable')),
])
def test_redelivery_after_catalog_failure_succeeds(seeded, method, error):
    blob_store, table = seeded

    with mock.patch.object(table, method, side_effect=error):
        with pytest.raises(type(error)):
            worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, table)
    assert blob_store.exists('upload-1.jpg')

    result = worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, table)

    assert result.outcome == UpdateOutcome.UPDATED
    props = table.get('user-1', 'b').properties
    assert props['PhotoSmallUrl'] == result.derivatives['small']
    assert props['PhotoMediumUrl'] == result.derivatives['medium']
    assert props['PhotoLargeUrl'] == result.derivatives['large']
    assert not blob_store.exists('upload-1.jpg')


def test_missing_source_without_previous_run_fails(blob_store, pitstop_table):
    pitstop_table.insert('user-1', 'b', PitstopId=42)
    with pytest.raises(StoreIOError):
        worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, pitstop_table)


def test_missing_source_does_not_trust_unrelated_large(blob_store, pitstop_table, landscape_jpeg):
    blob_store.put('someone-else.jpeg', landscape_jpeg, metadata={'type': 'big', 'original': 'other.jpg'})
    pitstop_table.insert('user-1', 'b', PitstopId=42, PhotoLargeUrl='someone-else.jpeg')
    with pytest.raises(StoreIOError):
        worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, pitstop_table)


def test_process_trip_job(blob_store, trip_table, landscape_jpeg):
    blob_store.put('trip.jpg', landscape_jpeg)
    trip_table.insert('user-1', 'x', TripId=7, Headline='Road trip')

    result = worker.process_job(_payload('7', 'trip.jpg'), TRIP_PIPELINE, blob_store, trip_table)

    assert set(result.derivatives) == {'small', 'large'}
    props = trip_table.get('user-1', 'x').properties
    assert props['MainPhotoSmallUrl'] == result.derivatives['small']
    assert props['MainPhotoUrl'] == result.derivatives['large']
    assert not blob_store.exists('trip.jpg')


@pytest.mark.parametrize('row_key', ['0', 'abc'])
def test_invalid_row_key_fails_before_any_io(row_key):
    blob_store = mock.Mock()
    catalog_store = mock.Mock()

    with pytest.raises(MalformedJobError):
        worker.process_job(_payload(row_key), PITSTOP_PIPELINE, blob_store, catalog_store)

    assert blob_store.method_calls == []
    assert catalog_store.method_calls == []


def test_unmatched_id_still_produces_derivatives(seeded, caplog):
    blob_store, table = seeded
    before = table.path.read_text()

    with caplog.at_level(logging.WARNING):
        result = worker.process_job(_payload('99'), PITSTOP_PIPELINE, blob_store, table)

    assert result.outcome == UpdateOutcome.NOT_FOUND
    assert all(blob_store.exists(name) for name in result.derivatives.values())
    assert table.path.read_text() == before
    assert 'PitstopId=99' in caplog.text


def test_unmatched_id_strict_mode(seeded):
    blob_store, table = seeded
    with pytest.raises(CatalogNotFound):
        worker.process_job(_payload('99'), PITSTOP_PIPELINE, blob_store, table, require_match=True)


def test_undecodable_source_keeps_original(blob_store, pitstop_table):
    blob_store.put('upload-1.jpg', b'not an image')
    pitstop_table.insert('user-1', 'b', PitstopId=42)

    with pytest.raises(DecodeError):
        worker.process_job(_payload(), PITSTOP_PIPELINE, blob_store, pitstop_table)

    assert blob_store.exists('upload-1.jpg')
    assert 'PhotoSmallUrl' not in pitstop_table.get('user-1', 'b').properties


# ------------------------------------------------------------------------------
# Queue settlement
# ------------------------------------------------------------------------------

@pytest.fixture
def lane(seeded, queue, poison_queue):
    blob_store, table = seeded
    yield worker.QueueLane(
        config=PITSTOP_PIPELINE,
        queue=queue,
        poison_queue=poison_queue,
        blob_store=blob_store,
        catalog_store=table,
        max_dequeue_count=3,
        require_match=False,
    )


def test_handle_message_success_deletes_message(lane):
    lane.queue.send(_payload())

    result = worker.handle_message(lane.queue.receive(), lane)

    assert result.outcome == UpdateOutcome.UPDATED
    assert len(lane.queue) == 0
    assert len(lane.poison_queue) == 0


def test_handle_message_failure_is_left_for_redelivery(lane):
    lane.queue.send(_payload(source='missing.jpg', row_key='41'))

    assert worker.handle_message(lane.queue.receive(), lane) is None
    assert len(lane.queue) == 1
    assert len(lane.poison_queue) == 0


def test_handle_message_poisons_after_max_dequeues(lane):
    lane.queue.send(_payload(source='missing.jpg', row_key='41'))

    for _ in range(3):
        worker.handle_message(lane.queue.receive(), lane)

    assert len(lane.queue) == 0
    poisoned = lane.poison_queue.receive()
    assert json.loads(poisoned.content)['sourceBlobName'] == 'missing.jpg'


def test_handle_message_poisons_malformed_immediately(lane):
    lane.queue.send(_payload(row_key='0'))

    assert worker.handle_message(lane.queue.receive(), lane) is None

    assert len(lane.queue) == 0
    assert len(lane.poison_queue) == 1
    # the original upload is untouched
    assert lane.blob_store.exists('upload-1.jpg')


def test_poll_once(lane):
    assert worker.poll_once([lane]) == 0
    lane.queue.send(_payload())
    assert worker.poll_once([lane]) == 1
    assert 'PhotoLargeUrl' in lane.catalog_store.get('user-1', 'b').properties


def test_build_lanes_uses_configured_backends():
    with mock.patch.object(worker, 'get_queue') as get_queue, \
            mock.patch.object(worker, 'get_blob_store') as get_blob_store, \
            mock.patch.object(worker, 'get_catalog_store') as get_catalog_store:
        lanes = worker.build_lanes(['trip', 'pitstop'])

    assert [lane.config for lane in lanes] == [TRIP_PIPELINE, PITSTOP_PIPELINE]
    get_queue.assert_any_call('tripqueue')
    get_queue.assert_any_call('pitstopqueue-poison')
    get_blob_store.assert_called_with('photos')
    get_catalog_store.assert_any_call('trip')
    get_catalog_store.assert_any_call('pitstop')


def test_build_lanes_rejects_unknown_kind():
    with pytest.raises(ValueError):
        worker.build_lanes(['hotel'])
