from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class RequestContext:
    """Identity and origin of the request currently being served.

    Built per request by ``broker.interfaces.api.deps`` and passed explicitly to the
    services; nothing in the broker reads a process-wide session.
    """

    user_id: UUID | None
    request_id: str | None = None
    client_ip: str | None = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def rate_limit_subject(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"ip:{self.client_ip or 'unknown'}"
