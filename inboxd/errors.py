"""
Error taxonomy shared by the provider client, the engine and the CLI
"""

from typing import Optional


EXIT_OK = 0
EXIT_USER_ERROR = 1
EXIT_AUTH = 2
EXIT_PROVIDER = 3
EXIT_PARTIAL = 4


class InboxdError(Exception):
    """Base class for every error the CLI knows how to report"""
    kind = 'Error'
    exit_code = EXIT_USER_ERROR
    retryable = False


class NotFound(InboxdError):
    kind = 'NotFound'
    exit_code = EXIT_PROVIDER


class AuthRevoked(InboxdError):
    """Stored tokens are gone or rejected; the account needs auth again"""
    kind = 'AuthRevoked'
    exit_code = EXIT_AUTH

    def __init__(self, account: str, message: Optional[str] = None):
        self.account = account
        super().__init__(message or f"Authorization for account '{account}' was revoked. Re-run: inbox auth -a {account}")


class ProviderError(InboxdError):
    """Error reported by the mail provider (or the network in front of it)"""
    kind = 'ProviderError'
    exit_code = EXIT_PROVIDER

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimited(ProviderError):
    kind = 'RateLimited'
    retryable = True


class NetworkError(ProviderError):
    kind = 'Network'
    retryable = True


class ProviderServerError(ProviderError):
    kind = 'Provider5xx'
    retryable = True


class ProviderClientError(ProviderError):
    kind = 'ProviderClient4xx'


class UnsafeBatch(InboxdError):
    """Pattern-based batch tripped a safety guard and --force was not given"""
    kind = 'UnsafeBatch'

    def __init__(self, warnings):
        self.warnings = list(warnings)
        super().__init__('; '.join(self.warnings))


class UserCancelled(InboxdError):
    kind = 'UserCancelled'

    def __init__(self, message: str = 'Cancelled.'):
        super().__init__(message)


class LocalIOError(InboxdError):
    kind = 'IOError'


class UsageError(InboxdError):
    """Bad or missing command-line arguments"""
    kind = 'UsageError'
