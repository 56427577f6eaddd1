import contextvars

_identity_id: contextvars.ContextVar[str] = contextvars.ContextVar("identity_id", default="-")
_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


def set_identity_id(identity_id: str) -> None:
    _identity_id.set(identity_id)


def get_identity_id() -> str:
    return _identity_id.get()


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


def clear_context() -> None:
    _identity_id.set("-")
    _request_id.set("-")


class ClientContext:
    """Network details of the caller, recorded with security events."""

    __slots__ = ("ip_address", "user_agent")

    def __init__(self, ip_address: str = "unknown", user_agent: str = "unknown") -> None:
        self.ip_address = ip_address or "unknown"
        self.user_agent = user_agent or "unknown"

    def __repr__(self) -> str:
        return f"ClientContext(ip_address={self.ip_address!r}, user_agent={self.user_agent!r})"
