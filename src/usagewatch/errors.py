class UsageWatchError(Exception):
    """
    base class for all errors raised by usagewatch.
    """


class TransientFetchError(UsageWatchError):
    """
    network or server failure while talking to the upstream API.
    Retried with backoff within a poll cycle.
    """

    def __init__(self, message: "str", status: "int" = 0) -> "None":
        super().__init__(message)
        self.status = status


class AuthExpiredError(UsageWatchError):
    """
    the upstream API answered with an explicit unauthorized status.
    Terminal for the poll cycle and for polling itself.
    """

    def __init__(self, message: "str" = "Session expired", status: "int" = 401) -> "None":
        super().__init__(message)
        self.status = status


class LoginCancelled(UsageWatchError):
    """
    the login surface was closed before a credential was captured.
    """


class PersistenceFailure(UsageWatchError):
    """
    a write to the backing key-value store failed.
    """
