# mqtt_test_server/auth/allowlist.py

from typing import Iterable, Optional, Tuple


class AllowList:
    """
    Optional membership filter for one dimension (client id, topic or
    payload keyword). An empty list is disabled and lets everything pass.
    """
    def __init__(self, values: Iterable[str] = ()):
        self.values: Tuple[str, ...] = tuple(v for v in values if v)
        self._members = frozenset(self.values)

    @classmethod
    def parse(cls, raw: Optional[str]) -> "AllowList":
        """
        Build from a comma separated option value. Blank entries are dropped,
        so a missing or blank option yields a disabled list.
        """
        if not raw:
            return cls()
        return cls(part.strip() for part in raw.split(","))

    @property
    def enabled(self) -> bool:
        return bool(self.values)

    def __contains__(self, value: str) -> bool:
        return value in self._members

    def contains_keyword(self, text: str) -> bool:
        # case sensitive; any keyword is enough
        return any(word in text for word in self.values)

    def __repr__(self) -> str:
        return f"AllowList({list(self.values)!r})"


class MessageFilter:
    """AND of the three allow-lists; disabled lists add no constraint."""
    def __init__(self,
                 client_ids: Optional[AllowList] = None,
                 topics: Optional[AllowList] = None,
                 keywords: Optional[AllowList] = None):
        self.client_ids = client_ids or AllowList()
        self.topics     = topics or AllowList()
        self.keywords   = keywords or AllowList()

    @classmethod
    def from_config(cls, config) -> "MessageFilter":
        return cls(
            client_ids=AllowList.parse(config.only_client_ids),
            topics=AllowList.parse(config.only_topics),
            keywords=AllowList.parse(config.only_words),
        )

    def allows_client(self, client_id: str) -> bool:
        return not self.client_ids.enabled or client_id in self.client_ids

    def allows_topic(self, topic: str) -> bool:
        return not self.topics.enabled or topic in self.topics

    def allows_payload(self, payload: str) -> bool:
        return not self.keywords.enabled or self.keywords.contains_keyword(payload)

    def admits(self, client_id: str, topic: str, payload: str) -> bool:
        return (self.allows_client(client_id)
                and self.allows_topic(topic)
                and self.allows_payload(payload))

    def describe(self) -> dict:
        return {
            "client_ids": list(self.client_ids.values),
            "topics":     list(self.topics.values),
            "keywords":   list(self.keywords.values),
        }
