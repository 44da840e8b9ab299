# utils/context.py

"""
Thread-local request context for audit logging.

Middleware stores who is making the request and from where; BaseModel and
the financial audit helper read it back without a request object in hand.
"""

from threading import local
import logging

logger = logging.getLogger(__name__)

_thread_locals = local()


def set_request_context(user=None, ip_address=None, user_agent=None, request_path=None, staff=None):
    """Set the current request context for this thread."""
    _thread_locals.request_context = {
        'user': user if user and user.is_authenticated else None,
        'ip_address': ip_address,
        'user_agent': user_agent or '',
        'request_path': request_path or '',
        'staff': staff,
    }
    logger.debug(f"Set request context: user={user}, ip={ip_address}")


def get_request_context():
    """Return the context dict for this thread, or None outside a request."""
    return getattr(_thread_locals, 'request_context', None)


def clear_request_context():
    if hasattr(_thread_locals, 'request_context'):
        delattr(_thread_locals, 'request_context')
        logger.debug("Cleared request context")


class RequestContext:
    """
    Context manager for temporarily setting request context.

    Webhook handlers use it so rows they write are attributed to the
    provider rather than left anonymous.

    Example:
        with RequestContext(request_path='webhook:stripe'):
            CheckoutService.finalize(tx_ref, success=True)
    """

    def __init__(self, user=None, ip_address=None, user_agent=None, request_path=None, staff=None):
        self.context = {
            'user': user,
            'ip_address': ip_address,
            'user_agent': user_agent or '',
            'request_path': request_path or '',
            'staff': staff,
        }
        self.previous_context = None

    def __enter__(self):
        self.previous_context = get_request_context()
        _thread_locals.request_context = self.context
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous_context:
            _thread_locals.request_context = self.previous_context
        else:
            clear_request_context()
