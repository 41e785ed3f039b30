"""Unit tests for the DynamoDB event store."""
import json
from datetime import datetime, timezone

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from processor.exceptions import (
    DuplicateCanonicalEventError,
    StaleEventVersionError,
    StoreAccessError,
)
from processor.models import CanonicalEventRecord, ChangeLogEntry
from storage.dynamodb_manager import DynamoDBEventStore

NOW = datetime(2025, 11, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb(aws_credentials):
    """Create mock canonical events, change log and calendars tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        dynamodb.create_table(
            TableName='test-canonical-events',
            KeySchema=[{'AttributeName': 'canonical_uid', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'canonical_uid', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        for table_name in ('test-canonical-event-changes', 'test-calendars'):
            dynamodb.create_table(
                TableName=table_name,
                KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
                AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
                BillingMode='PAY_PER_REQUEST'
            )

        yield dynamodb


def make_store(dynamodb, **kwargs):
    kwargs.setdefault('calendars_table_name', 'test-calendars')
    return DynamoDBEventStore(
        events_table_name='test-canonical-events',
        changes_table_name='test-canonical-event-changes',
        dynamodb=dynamodb,
        clock=lambda: NOW,
        **kwargs
    )


@pytest.fixture
def store(dynamodb):
    return make_store(dynamodb)


@pytest.fixture
def sample_record():
    return CanonicalEventRecord(
        canonical_uid='0123456789ab',
        title='Blockchain Meetup',
        description='https://lu.ma/event123',
        location_raw='Zo House SF',
        lat=37.7817309,
        lng=-122.401198,
        geocode_status='success',
        geocode_attempted_at='2025-11-15T12:00:00.000Z',
        starts_at='2025-11-20T18:00:00.000Z',
        source_refs=[{
            'event_url': 'https://lu.ma/event123',
            'fetched_at': '2025-11-15T12:00:00.000Z'
        }],
        raw_payload=json.dumps({'title': 'Blockchain Meetup'}),
    )


def test_find_missing_returns_none(store):
    """Test that an unknown UID has no record."""
    assert store.find_by_canonical_uid('ffffffffffff') is None


def test_insert_assigns_identity_and_round_trips(store, sample_record):
    """Test insert followed by lookup."""
    inserted = store.insert(sample_record)

    assert inserted.id
    assert inserted.created_at == '2025-11-15T12:00:00.000Z'
    assert inserted.updated_at == '2025-11-15T12:00:00.000Z'

    found = store.find_by_canonical_uid('0123456789ab')
    assert found.id == inserted.id
    assert found.title == 'Blockchain Meetup'
    assert found.lat == pytest.approx(37.7817309)
    assert found.lng == pytest.approx(-122.401198)
    assert found.tz == 'UTC'
    assert found.event_version == 1
    assert found.source_refs == sample_record.source_refs
    assert json.loads(found.raw_payload) == {'title': 'Blockchain Meetup'}


def test_insert_with_null_coordinates(store, sample_record):
    """Test that failed geocodes are stored with null coordinates."""
    sample_record.lat = None
    sample_record.lng = None
    sample_record.geocode_status = 'failed'
    sample_record.description = None

    store.insert(sample_record)

    found = store.find_by_canonical_uid('0123456789ab')
    assert found.lat is None
    assert found.lng is None
    assert found.description is None
    assert found.geocode_status == 'failed'


def test_insert_duplicate_uid_rejected(store, sample_record):
    """Test the uniqueness constraint on canonical_uid."""
    store.insert(sample_record)

    duplicate = CanonicalEventRecord(**{**sample_record.__dict__, 'id': None})
    with pytest.raises(DuplicateCanonicalEventError):
        store.insert(duplicate)


def test_update_with_expected_version(store, sample_record):
    """Test a version-gated partial update."""
    store.insert(sample_record)

    updated = store.update(
        '0123456789ab',
        {'lat': 12.5, 'lng': 77.25, 'geocode_status': 'success', 'event_version': 2},
        expected_version=1
    )

    assert updated.event_version == 2
    assert updated.lat == 12.5
    assert updated.lng == 77.25
    assert updated.title == 'Blockchain Meetup'
    assert updated.updated_at == '2025-11-15T12:00:00.000Z'


def test_update_stale_version_rejected(store, sample_record):
    """Test that a concurrent change makes the update fail."""
    store.insert(sample_record)
    store.update('0123456789ab', {'event_version': 2}, expected_version=1)

    with pytest.raises(StaleEventVersionError):
        store.update('0123456789ab', {'event_version': 2}, expected_version=1)

    assert store.find_by_canonical_uid('0123456789ab').event_version == 2


def test_update_missing_record_rejected(store):
    """Test that updates never create records."""
    with pytest.raises(StaleEventVersionError):
        store.update('ffffffffffff', {'lat': 1.0})

    assert store.find_by_canonical_uid('ffffffffffff') is None


def test_restricted_client_cannot_write_events(dynamodb, sample_record):
    """Test that a client without elevated access is read/audit only."""
    store = make_store(dynamodb, has_elevated_access=False)

    with pytest.raises(StoreAccessError):
        store.insert(sample_record)
    with pytest.raises(StoreAccessError):
        store.update('0123456789ab', {'lat': 1.0})

    entry = store.append_change_log(ChangeLogEntry(change_type='dry-run', payload={'action': 'would-insert'}))
    assert entry.id


def test_append_and_read_change_log(store):
    """Test change log append and filtering."""
    store.append_change_log(ChangeLogEntry(
        change_type='dry-run',
        payload={'action': 'would-insert', 'canonical_uid': '0123456789ab', 'location': None}
    ))
    insert_entry = store.append_change_log(ChangeLogEntry(
        canonical_event_id='event-1',
        change_type='insert',
        payload={'event_name': 'Blockchain Meetup', 'uid': '0123456789ab'}
    ))

    entries = store.get_change_log()
    assert len(entries) == 2
    assert {entry.change_type for entry in entries} == {'dry-run', 'insert'}

    dry_run_entry = next(entry for entry in entries if entry.change_type == 'dry-run')
    assert dry_run_entry.canonical_event_id is None
    assert dry_run_entry.payload['location'] is None

    event_entries = store.get_change_log('event-1')
    assert [entry.id for entry in event_entries] == [insert_entry.id]
    assert event_entries[0].created_at == '2025-11-15T12:00:00.000Z'


def test_get_active_calendars(dynamodb, store):
    """Test that only active calendars are returned."""
    table = dynamodb.Table('test-calendars')
    table.put_item(Item={'id': 'sf', 'name': 'Zo House SF', 'url': 'https://cal/sf', 'is_active': True})
    table.put_item(Item={'id': 'old', 'name': 'Retired', 'url': 'https://cal/old', 'is_active': False})

    calendars = store.get_active_calendars()

    assert [calendar['url'] for calendar in calendars] == ['https://cal/sf']


def test_get_active_calendars_without_table(dynamodb):
    """Test that a store without a calendars table reports none."""
    store = make_store(dynamodb, calendars_table_name=None)

    assert store.get_active_calendars() == []


class TestWritesWithChangeLog:
    """Test cases for record writes carrying their change log entry."""

    def test_insert_writes_record_and_entry(self, store, sample_record):
        """Test that the entry is linked to the new record."""
        change = ChangeLogEntry(
            change_type='insert',
            payload={'event_name': 'Blockchain Meetup', 'uid': '0123456789ab'}
        )

        inserted = store.insert(sample_record, change=change)

        assert store.find_by_canonical_uid('0123456789ab').id == inserted.id
        entries = store.get_change_log(inserted.id)
        assert [entry.id for entry in entries] == [change.id]
        assert entries[0].payload == {'event_name': 'Blockchain Meetup', 'uid': '0123456789ab'}
        assert entries[0].created_at == '2025-11-15T12:00:00.000Z'

    def test_insert_duplicate_writes_no_entry(self, store, sample_record):
        """Test that a rejected insert leaves no audit entry behind."""
        store.insert(sample_record)

        duplicate = CanonicalEventRecord(**{**sample_record.__dict__, 'id': None})
        with pytest.raises(DuplicateCanonicalEventError):
            store.insert(duplicate, change=ChangeLogEntry(change_type='insert', payload={}))

        assert store.get_change_log() == []

    def test_insert_rolled_back_when_entry_fails(self, dynamodb, store, sample_record):
        """Test that the record is not kept if its entry cannot be written."""
        dynamodb.Table('test-canonical-event-changes').delete()

        with pytest.raises(ClientError):
            store.insert(sample_record, change=ChangeLogEntry(change_type='insert', payload={}))

        assert store.find_by_canonical_uid('0123456789ab') is None

    def test_update_writes_record_and_entry(self, store, sample_record):
        store.insert(sample_record)
        change = ChangeLogEntry(
            canonical_event_id=sample_record.id,
            change_type='update',
            payload={'action': 'geocode_update', 'event_name': 'Blockchain Meetup'}
        )

        updated = store.update(
            '0123456789ab',
            {'lat': 12.5, 'event_version': 2},
            expected_version=1,
            change=change
        )

        assert updated.event_version == 2
        assert updated.lat == 12.5
        assert [entry.change_type for entry in store.get_change_log(sample_record.id)] == ['update']

    def test_stale_update_writes_no_entry(self, store, sample_record):
        """Test that a lost version race changes neither table."""
        store.insert(sample_record)
        store.update('0123456789ab', {'event_version': 2}, expected_version=1)

        with pytest.raises(StaleEventVersionError):
            store.update(
                '0123456789ab',
                {'lat': 1.0, 'event_version': 2},
                expected_version=1,
                change=ChangeLogEntry(change_type='update', payload={})
            )

        assert store.get_change_log() == []
        assert store.find_by_canonical_uid('0123456789ab').lat == pytest.approx(37.7817309)

    def test_restricted_client_cannot_write_with_entry(self, dynamodb, sample_record):
        store = make_store(dynamodb, has_elevated_access=False)

        with pytest.raises(StoreAccessError):
            store.insert(sample_record, change=ChangeLogEntry(change_type='insert', payload={}))

        assert store.get_change_log() == []
