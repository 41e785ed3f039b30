"""Tests for the command line driver."""
import json
from unittest.mock import Mock, patch

import pytest

from processor.exceptions import CalendarNotFoundError
from processor.models import SyncStats
from sync_events import build_parser, main


@pytest.fixture
def mock_worker():
    worker = Mock()
    worker.sync.return_value = SyncStats(processed=2, skipped=2)
    with patch('sync_events.create_sync_worker', return_value=worker), \
            patch('sync_events.setup_logging'):
        yield worker


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])

        assert args.apply is False
        assert args.calendar is None
        assert args.verbose is False

    def test_all_flags(self):
        args = build_parser().parse_args(['--apply', '--calendar=cal-123', '-v'])

        assert args.apply is True
        assert args.calendar == 'cal-123'
        assert args.verbose is True


class TestMain:
    """Test cases for the CLI entry point."""

    def test_dry_run_by_default(self, mock_worker, capsys):
        """Test that a bare invocation is a dry run and prints stats."""
        assert main([]) == 0

        mock_worker.sync.assert_called_once_with(dry_run=True, calendar_id=None, verbose=False)
        stats = json.loads(capsys.readouterr().out)
        assert stats['processed'] == 2
        assert stats['skipped'] == 2
        assert stats['dry_run_only'] is True

    def test_apply_with_calendar_filter(self, mock_worker):
        assert main(['--apply', '--calendar', 'cal-123', '--verbose']) == 0

        mock_worker.sync.assert_called_once_with(dry_run=False, calendar_id='cal-123', verbose=True)

    def test_per_event_errors_still_exit_zero(self, mock_worker):
        mock_worker.sync.return_value = SyncStats(processed=1, errors=4)

        assert main([]) == 0

    def test_fatal_error_exits_one(self, mock_worker, capsys):
        """Test that fatal failures exit non-zero without printing stats."""
        mock_worker.sync.side_effect = CalendarNotFoundError('cal-missing')

        assert main(['--calendar=cal-missing']) == 1
        assert capsys.readouterr().out == ''
