"""AWS Lambda handler for the scheduled canonical events sync."""
import json
import logging
import time
from dataclasses import asdict
from typing import Any, Dict

from config.logging_config import setup_logging
from config.settings import WorkerSettings
from processor.exceptions import SyncSetupError
from processor.sync_worker import create_sync_worker


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for the canonical events sync.

    The EventBridge payload may set ``apply`` (bool), ``calendar`` (str)
    and ``verbose`` (bool). Without ``apply`` the configured dry-run
    default is used.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and sync statistics
    """
    settings = WorkerSettings.from_env()

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    event = event or {}
    dry_run = None if event.get('apply') is None else not event['apply']
    calendar_id = event.get('calendar') or None
    verbose = bool(event.get('verbose', False))

    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={
            'feature_flags': settings.feature_flag_state(),
            'calendar_id': calendar_id
        }
    )

    try:
        worker = create_sync_worker(settings)
        stats = worker.sync(dry_run=dry_run, calendar_id=calendar_id, verbose=verbose)

    except SyncSetupError as e:
        logger.error(f"Sync could not start: {e}", exc_info=True)
        return _error_response('Sync setup failed', e, start_time)

    except Exception as e:
        logger.error(f"Lambda execution failed: {e}", exc_info=True)
        return _error_response('Sync failed', e, start_time)

    duration = time.time() - start_time
    logger.info(
        "Lambda execution completed successfully",
        extra={'duration_seconds': round(duration, 2)}
    )

    return {
        'statusCode': 200,
        'body': json.dumps({
            'message': 'Sync completed successfully',
            'statistics': asdict(stats),
            'config': {
                'dry_run': stats.dry_run_only,
                'calendar_filter': calendar_id or 'all',
                'feature_flags': settings.feature_flag_state()
            },
            'duration_seconds': round(duration, 2)
        })
    }


def _error_response(message: str, error: Exception, start_time: float) -> Dict[str, Any]:
    duration = time.time() - start_time
    return {
        'statusCode': 500,
        'body': json.dumps({
            'message': message,
            'error': str(error),
            'error_type': type(error).__name__,
            'duration_seconds': round(duration, 2)
        })
    }
