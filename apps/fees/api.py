# fees/api.py

"""
Plumbing shared by the JSON endpoints: body parsing, form-error
conversion and the api_view decorator that maps LedgerError onto HTTP.
"""

import json
import logging
from functools import wraps

from django.http import JsonResponse

from fees.exceptions import LedgerError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)


def parse_json_body(request):
    """Decode a JSON object body; an empty body is an empty dict."""
    if not request.body:
        return {}
    try:
        data = json.loads(request.body.decode(request.encoding or 'utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Request body must be valid JSON.")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def bind_form(form_class, data, field_map=None):
    """
    Validate wire data with a Django form and return cleaned_data.

    `field_map` renames camelCase wire keys to the form's field names.
    Raises ValidationError with the per-field messages on failure.
    """
    if field_map:
        data = {field_map.get(key, key): value for key, value in data.items()}
    form = form_class(data)
    if not form.is_valid():
        errors = {field: [e['message'] for e in messages] for field, messages in form.errors.get_json_data().items()}
        first = next(iter(errors.values()))[0]
        raise ValidationError(first, errors=errors)
    return form.cleaned_data


def success_response(payload=None, status=200, **extra):
    body = {'success': True}
    body.update(payload or {})
    body.update(extra)
    return JsonResponse(body, status=status)


def api_view(require_staff=True):
    """
    Wrap a JSON endpoint.

    - rejects callers without a ledger role (401) when require_staff is set
    - turns LedgerError into its structured JSON error and status
    - logs anything else and answers with a generic 500
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            try:
                if require_staff and getattr(request, 'staff', None) is None:
                    raise UnauthorizedError()
                return view_func(request, *args, **kwargs)
            except LedgerError as exc:
                if exc.status_code >= 500:
                    logger.error(f"{request.method} {request.path} failed: {exc.code}: {exc.message}")
                else:
                    logger.info(f"{request.method} {request.path} rejected: {exc.code}: {exc.message}")
                return JsonResponse(exc.to_dict(), status=exc.status_code)
            except Exception:
                logger.exception(f"Unexpected error in {request.method} {request.path}")
                return JsonResponse(
                    {'success': False, 'error': 'internal_error', 'message': 'An unexpected error occurred.'},
                    status=500,
                )
        return wrapper
    return decorator
