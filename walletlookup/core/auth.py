from dataclasses import dataclass
from enum import Enum

from walletlookup.services.records import ApiKeyRecord, ApiPlanRecord


class CallerType(str, Enum):
    API_KEY = "api_key"
    SYSTEM = "system"


@dataclass(slots=True)
class Caller:
    caller_type: CallerType
    subject: str
    api_key: ApiKeyRecord | None = None
    plan: ApiPlanRecord | None = None

    @property
    def is_metered(self) -> bool:
        return self.api_key is not None and self.plan is not None
