# utils/middleware.py

import logging

from utils.access import resolve_staff_context
from utils.context import set_request_context, clear_request_context

logger = logging.getLogger(__name__)


def get_client_ip(request):
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first one
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


class StaffRoleMiddleware:
    """
    Attach the caller's ledger role to the request as `request.staff`.

    Must run after AuthenticationMiddleware.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.staff = resolve_staff_context(getattr(request, 'user', None))
        if request.staff:
            logger.debug(f"Resolved staff role {request.staff.role} for {request.staff.code}")
        return self.get_response(request)


class AuditContextMiddleware:
    """
    Middleware to capture request context for audit logging.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        user = getattr(request, 'user', None)
        set_request_context(
            user=user if user is not None and user.is_authenticated else None,
            ip_address=get_client_ip(request),
            user_agent=request.META.get('HTTP_USER_AGENT', ''),
            request_path=request.path,
            staff=getattr(request, 'staff', None),
        )

        try:
            response = self.get_response(request)
        finally:
            # Always clear context after request
            clear_request_context()

        return response

    def process_exception(self, request, exception):
        clear_request_context()
        return None
