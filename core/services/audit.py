import logging
from typing import Optional, Any, Dict

logger = logging.getLogger('core.audit')


def log_action(*, user: Any = None, action: str, result: str = 'ok', detail: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Emit one structured session lifecycle event on the ``core.audit`` logger.

    Only the user id and role are recorded; tokens never reach the log.
    """
    event: Dict[str, Any] = {
        'action': action,
        'result': result,
        'user_id': getattr(user, 'id', None) if user is not None else None,
        'role': getattr(user, 'role', None) if user is not None else None,
        'detail': detail or {},
    }
    level = logging.INFO if result == 'ok' else logging.WARNING
    logger.log(level, '%s %s', action, result, extra={'audit': event})
    return event
