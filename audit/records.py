# mqtt_test_server/audit/records.py

import enum
from dataclasses import dataclass, field
from datetime import datetime


class Category(enum.Enum):
    LIFECYCLE  = "lifecycle"
    STATUS     = "status"
    MESSAGE    = "message"
    DIAGNOSTIC = "diagnostic"


class EventKind(enum.Enum):
    CONNECT      = ("Connect", "L", Category.LIFECYCLE)
    DISCONNECT   = ("Disconnect", "D", Category.LIFECYCLE)
    SUBSCRIBED   = ("Subscribed", "S", Category.STATUS)
    UNSUBSCRIBED = ("Unsubscribed", "U", Category.STATUS)
    MESSAGE      = ("Message", "M", Category.MESSAGE)
    ERROR        = ("Error", "E", Category.DIAGNOSTIC)

    def __init__(self, label: str, code: str, category: Category):
        self.label = label
        self.code = code
        self.category = category


@dataclass
class AuditRecord:
    client_id: str
    kind: EventKind
    subject: str = ""      # topic name or subscription filter
    detail: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def category(self) -> Category:
        return self.kind.category
