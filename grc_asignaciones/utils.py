from datetime import datetime, date
from flask import jsonify
from grc_asignaciones.models import get_now, get_today
from grc_asignaciones.errors import ValidationError
import time
import functools
import requests

__all__ = ['get_now', 'get_today', 'api_response', 'parse_fecha', 'iso', 'porcentaje_display', 'retry_request']

def api_response(success=True, data=None, error=None, status=200):
    """Standardized JSON response for all API routes."""
    response = {
        'success': success,
        'data': data,
        'error': error
    }
    return jsonify(response), status

def parse_fecha(value, campo='fecha_limite', requerido=True):
    """Accepts a date, a datetime or an ISO-8601 string (YYYY-MM-DD)."""
    if value is None or value == '':
        if requerido:
            raise ValidationError(f"'{campo}' es obligatorio", campo=campo)
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"'{campo}' debe tener formato ISO-8601 (YYYY-MM-DD)", campo=campo, valor=value)

def iso(value):
    return value.isoformat() if value else None

def porcentaje_display(value):
    # Stored with full precision, rounded only on the way out
    return round(float(value or 0), 2)

def retry_request(retries=3, backoff_factor=0.3, status_codes=(500, 502, 503, 504)):
    """
    Decorator for retrying requests with exponential backoff.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            for i in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except requests.exceptions.RequestException as e:
                    last_exception = e
                    # Only retry if it's a server error or timeout
                    is_retryable = False
                    if getattr(e, 'response', None) is not None:
                        if e.response.status_code in status_codes:
                            is_retryable = True
                    elif isinstance(e, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
                        is_retryable = True

                    if not is_retryable or i == retries:
                        raise

                    time.sleep(backoff_factor * (2 ** i))
            raise last_exception
        return wrapper
    return decorator
