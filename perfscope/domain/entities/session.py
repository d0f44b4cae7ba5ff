from datetime import datetime

from attr import dataclass, field


@dataclass(slots=True, frozen=True)
class Session:
    id: str
    anonymous_user_id: str
    device_type: str
    session_start: datetime
    session_end: datetime | None = None
    app_version: str | None = None
    device_id: str | None = field(default=None)

    @property
    def is_active(self) -> bool:
        return self.session_end is None

    @property
    def device_key(self) -> str:
        return self.device_id or self.anonymous_user_id
