"""DynamoDB store for canonical events and their change log."""
import logging
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.exceptions import (
    DuplicateCanonicalEventError,
    StaleEventVersionError,
    StoreAccessError,
)
from processor.models import CanonicalEventRecord, ChangeLogEntry
from processor.timestamps import to_iso_utc, utc_now

logger = logging.getLogger(__name__)

CONDITIONAL_CHECK_FAILED = 'ConditionalCheckFailedException'
TRANSACTION_CANCELED = 'TransactionCanceledException'
TRANSACTION_CONDITION_FAILED = 'ConditionalCheckFailed'


class DynamoDBEventStore:
    """
    Persistent store backed by three DynamoDB tables.

    - canonical events, keyed by ``canonical_uid``
    - change log, keyed by ``id``
    - calendars, keyed by ``id`` (``url``, ``is_active``)

    ``has_elevated_access`` marks a client allowed to write canonical
    events. A restricted client may still read and append to the change
    log, which is all a dry run needs.
    """

    def __init__(
        self,
        events_table_name: str,
        changes_table_name: str,
        calendars_table_name: Optional[str] = None,
        has_elevated_access: bool = True,
        dynamodb=None,
        clock: Callable = utc_now
    ):
        """
        Initialize DynamoDB table references.

        Args:
            events_table_name: Name of the canonical events table
            changes_table_name: Name of the change log table
            calendars_table_name: Name of the calendars table, if any
            has_elevated_access: Whether canonical event writes are allowed
            dynamodb: Optional boto3 DynamoDB resource
            clock: Returns the current aware datetime
        """
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.events_table = self.dynamodb.Table(events_table_name)
        self.changes_table = self.dynamodb.Table(changes_table_name)
        self.calendars_table = (
            self.dynamodb.Table(calendars_table_name) if calendars_table_name else None
        )
        self.has_elevated_access = has_elevated_access
        self.clock = clock
        logger.info(
            f"Initialized DynamoDBEventStore for tables: {events_table_name}, "
            f"{changes_table_name}"
        )

    def find_by_canonical_uid(self, canonical_uid: str) -> Optional[CanonicalEventRecord]:
        """
        Look up a canonical event by its UID.

        Returns:
            The stored record, or None if there is none

        Raises:
            ClientError: If the read fails
        """
        try:
            response = self.events_table.get_item(
                Key={'canonical_uid': canonical_uid},
                ConsistentRead=True
            )
        except ClientError as e:
            logger.error(f"Error reading canonical event {canonical_uid}: {e}")
            raise

        item = response.get('Item')
        if item is None:
            return None
        return _item_to_record(item)

    def insert(
        self,
        record: CanonicalEventRecord,
        change: Optional[ChangeLogEntry] = None
    ) -> CanonicalEventRecord:
        """
        Insert a new canonical event.

        The store assigns ``id``, ``created_at`` and ``updated_at``. When
        ``change`` is given it is linked to the new record and written in
        the same transaction, so neither write lands without the other.

        Returns:
            The record as stored

        Raises:
            StoreAccessError: If the client lacks elevated access
            DuplicateCanonicalEventError: If the UID is already stored
            ClientError: On any other DynamoDB error
        """
        self._require_write_access()

        now = to_iso_utc(self.clock())
        record.id = record.id or str(uuid.uuid4())
        record.created_at = record.created_at or now
        record.updated_at = now

        condition = 'attribute_not_exists(canonical_uid)'

        try:
            if change is None:
                self.events_table.put_item(
                    Item=_record_to_item(record),
                    ConditionExpression=condition
                )
            else:
                change.canonical_event_id = change.canonical_event_id or record.id
                self._write_with_change_log(
                    {
                        'Put': {
                            'TableName': self.events_table.name,
                            'Item': _record_to_item(record),
                            'ConditionExpression': condition
                        }
                    },
                    change
                )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise DuplicateCanonicalEventError(record.canonical_uid) from e
            logger.error(f"Error inserting canonical event {record.canonical_uid}: {e}")
            raise

        return record

    def update(
        self,
        canonical_uid: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        change: Optional[ChangeLogEntry] = None
    ) -> CanonicalEventRecord:
        """
        Update some fields of an existing canonical event.

        Args:
            canonical_uid: Key of the record to update
            fields: Attribute names and new values
            expected_version: If given, only update while ``event_version``
                still has this value
            change: Change log entry written in the same transaction

        Returns:
            The record after the update

        Raises:
            StoreAccessError: If the client lacks elevated access
            StaleEventVersionError: If the record is missing or its version moved
            ClientError: On any other DynamoDB error
        """
        self._require_write_access()

        fields = dict(fields)
        fields.setdefault('updated_at', to_iso_utc(self.clock()))

        names = {}
        values = {}
        assignments = []
        for index, (name, value) in enumerate(fields.items()):
            names[f'#f{index}'] = name
            values[f':v{index}'] = _to_dynamo(value)
            assignments.append(f'#f{index} = :v{index}')

        condition = 'attribute_exists(canonical_uid)'
        if expected_version is not None:
            names['#version'] = 'event_version'
            values[':expected_version'] = expected_version
            condition += ' AND #version = :expected_version'

        update_kwargs = {
            'Key': {'canonical_uid': canonical_uid},
            'UpdateExpression': 'SET ' + ', '.join(assignments),
            'ConditionExpression': condition,
            'ExpressionAttributeNames': names,
            'ExpressionAttributeValues': values,
        }

        try:
            if change is None:
                response = self.events_table.update_item(
                    ReturnValues='ALL_NEW',
                    **update_kwargs
                )
                return _item_to_record(response['Attributes'])

            self._write_with_change_log(
                {'Update': {'TableName': self.events_table.name, **update_kwargs}},
                change
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise StaleEventVersionError(canonical_uid, expected_version) from e
            logger.error(f"Error updating canonical event {canonical_uid}: {e}")
            raise

        # Transactions return no attributes
        return self.find_by_canonical_uid(canonical_uid)

    def append_change_log(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        """
        Append an audit record. Allowed for restricted clients too.

        Returns:
            The entry with ``id`` and ``created_at`` filled in
        """
        try:
            self.changes_table.put_item(Item=self._change_to_item(entry))
        except ClientError as e:
            logger.error(f"Error writing change log entry: {e}")
            raise

        return entry

    def _write_with_change_log(self, record_operation: Dict[str, Any], change: ChangeLogEntry) -> None:
        """Write a record operation and its change log entry atomically."""
        # The record operation stays first; conditional failures are read from it
        self.dynamodb.meta.client.transact_write_items(
            TransactItems=[
                record_operation,
                {
                    'Put': {
                        'TableName': self.changes_table.name,
                        'Item': self._change_to_item(change)
                    }
                },
            ]
        )

    def _change_to_item(self, entry: ChangeLogEntry) -> Dict[str, Any]:
        entry.id = entry.id or str(uuid.uuid4())
        entry.created_at = entry.created_at or to_iso_utc(self.clock())

        item = {
            'id': entry.id,
            'change_type': entry.change_type,
            'payload': _to_dynamo(entry.payload),
            'created_at': entry.created_at,
        }
        if entry.canonical_event_id:
            item['canonical_event_id'] = entry.canonical_event_id
        return item

    def get_change_log(self, canonical_event_id: Optional[str] = None) -> List[ChangeLogEntry]:
        """
        Read change log entries, oldest first.

        Args:
            canonical_event_id: Only return entries for this event
        """
        scan_kwargs = {}
        if canonical_event_id is not None:
            scan_kwargs['FilterExpression'] = Attr('canonical_event_id').eq(canonical_event_id)

        items = self._scan_all(self.changes_table, **scan_kwargs)
        entries = [
            ChangeLogEntry(
                id=item['id'],
                change_type=item['change_type'],
                payload=_from_dynamo(item.get('payload', {})),
                canonical_event_id=item.get('canonical_event_id'),
                created_at=item.get('created_at')
            )
            for item in items
        ]
        entries.sort(key=lambda entry: entry.created_at or '')
        return entries

    def get_active_calendars(self) -> List[Dict[str, Any]]:
        """
        Return active rows of the calendars table.

        Returns an empty list when no calendars table is configured.
        """
        if self.calendars_table is None:
            return []

        items = self._scan_all(
            self.calendars_table,
            FilterExpression=Attr('is_active').eq(True)
        )
        logger.info(f"Retrieved {len(items)} active calendars from DynamoDB")
        return [_from_dynamo(item) for item in items]

    def _scan_all(self, table, **scan_kwargs) -> List[Dict[str, Any]]:
        try:
            response = table.scan(**scan_kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **scan_kwargs
                )
                items.extend(response.get('Items', []))

            return items

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table {table.name}: {e}")
            raise

    def _require_write_access(self) -> None:
        if not self.has_elevated_access:
            raise StoreAccessError(
                "Store client lacks elevated access for canonical event writes"
            )


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _is_conditional_failure(error: ClientError) -> bool:
    """Whether a write, plain or transactional, failed its record condition."""
    code = _error_code(error)
    if code == CONDITIONAL_CHECK_FAILED:
        return True
    if code != TRANSACTION_CANCELED:
        return False

    reasons = error.response.get('CancellationReasons') or []
    if reasons:
        return reasons[0].get('Code') == TRANSACTION_CONDITION_FAILED
    return TRANSACTION_CONDITION_FAILED in error.response.get('Error', {}).get('Message', '')


def _to_dynamo(value: Any) -> Any:
    """Convert floats (recursively) to Decimal for DynamoDB."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {key: _to_dynamo(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(item) for item in value]
    return value


def _from_dynamo(value: Any) -> Any:
    """Convert Decimals back to int or float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: _from_dynamo(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(item) for item in value]
    return value


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _record_to_item(record: CanonicalEventRecord) -> Dict[str, Any]:
    """
    Convert a CanonicalEventRecord to a DynamoDB item.

    Nullable attributes are stored as NULL so they remain updatable.
    """
    return {
        'canonical_uid': record.canonical_uid,
        'id': record.id,
        'title': record.title,
        'description': record.description,
        'location_raw': record.location_raw,
        'lat': _to_dynamo(record.lat),
        'lng': _to_dynamo(record.lng),
        'geocode_status': record.geocode_status,
        'geocode_attempted_at': record.geocode_attempted_at,
        'starts_at': record.starts_at,
        'tz': record.tz,
        'source_refs': _to_dynamo(record.source_refs),
        'raw_payload': record.raw_payload,
        'event_version': record.event_version,
        'created_at': record.created_at,
        'updated_at': record.updated_at,
    }


def _item_to_record(item: Dict[str, Any]) -> CanonicalEventRecord:
    """Convert a DynamoDB item to a CanonicalEventRecord."""
    return CanonicalEventRecord(
        id=item.get('id'),
        canonical_uid=item['canonical_uid'],
        title=item['title'],
        description=item.get('description'),
        location_raw=item['location_raw'],
        lat=_optional_float(item.get('lat')),
        lng=_optional_float(item.get('lng')),
        geocode_status=item['geocode_status'],
        geocode_attempted_at=item.get('geocode_attempted_at'),
        starts_at=item['starts_at'],
        tz=item.get('tz') or 'UTC',
        source_refs=_from_dynamo(item.get('source_refs') or []),
        raw_payload=item.get('raw_payload'),
        event_version=int(item.get('event_version', 1)),
        created_at=item.get('created_at'),
        updated_at=item.get('updated_at')
    )
