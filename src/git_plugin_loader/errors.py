"""
Error types for Git Plugin Loader.

Lower layers (git wrapper, GitHub client, state store, export helpers) raise
these exceptions. Public operations catch ``PluginLoaderError`` at their
boundary (usually through the ``returns_result`` decorator) and turn it
into a ``{'success': False, ...}`` result.
"""

import functools
from typing import Any, Dict, Optional


class PluginLoaderError(Exception):
    """Base class for all typed failures."""

    code = 'error'

    def __init__(self, message: str = '', **details: Any):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': False,
            'error': self.message,
            'code': self.code,
        }
        result.update(self.details)
        return result


class InvalidInput(PluginLoaderError):
    code = 'invalid_input'


class InvalidURL(InvalidInput):
    code = 'invalid_url'


class NotFound(PluginLoaderError):
    code = 'not_found'


class DirectoryNotFound(NotFound):
    code = 'directory_not_found'


class Conflict(PluginLoaderError):
    code = 'conflict'


class DirectoryExists(Conflict):
    code = 'directory_exists'


class PluginExists(Conflict):
    code = 'plugin_exists'


class AuthRequired(PluginLoaderError):
    code = 'auth_required'


class TokenRequired(AuthRequired):
    code = 'token_required'


class AuthFailed(PluginLoaderError):
    code = 'auth_failed'


class RateLimited(PluginLoaderError):
    """Remote quota exhausted; ``reset_at`` is a unix timestamp (0 if unknown)."""

    code = 'rate_limited'

    def __init__(self, message: str = '', reset_at: int = 0):
        super().__init__(message, reset_at=reset_at)
        self.reset_at = reset_at


class TransportError(PluginLoaderError):
    code = 'transport_error'


class ApiError(PluginLoaderError):
    """The remote API answered with an error status other than auth, not-found or rate limit."""

    code = 'api_error'

    def __init__(self, message: str = '', status_code: int = 0):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code


class ToolUnavailable(PluginLoaderError):
    code = 'tool_unavailable'


class CommandFailed(PluginLoaderError):
    """A git command exited non-zero. ``output`` holds combined stdout+stderr."""

    code = 'command_failed'

    def __init__(self, message: str = '', command: Optional[list] = None,
                 output: str = '', returncode: Optional[int] = None):
        super().__init__(message or output or 'Git command failed')
        self.command = command or []
        self.output = output
        self.returncode = returncode


class CheckoutFailed(CommandFailed):
    code = 'checkout_failed'


class PathViolation(PluginLoaderError):
    code = 'path_violation'


class InvalidPath(PathViolation):
    code = 'invalid_path'


class Unavailable(PluginLoaderError):
    code = 'unavailable'


class ExportError(PluginLoaderError):
    code = 'export_error'


def returns_result(method):
    """
    Decorate a public operation so failures come back as result dicts.

    Typed failures are logged as warnings; anything else is logged with a
    traceback and reported with the generic ``error`` code.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except PluginLoaderError as e:
            self.logger.warning(f"{method.__name__} failed: {e}")
            return e.to_dict()
        except Exception as e:
            self.logger.error(f"Unexpected error in {method.__name__}: {e}", exc_info=True)
            return {
                'success': False,
                'error': str(e) or e.__class__.__name__,
                'code': PluginLoaderError.code,
            }
    return wrapper
