# mqtt_test_server/broker/session.py

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class ClientInfo:
    """What the hooks get to see about a connected client."""
    client_id: str
    username: str = ""
    remote: str = ""
    listener: str = ""
    tls: bool = False
    connected_at: float = field(default_factory=time.time)


class Session:
    def __init__(self,
                 client: ClientInfo,
                 user: dict,
                 writer: asyncio.StreamWriter):
        self.client = client
        self.user = user
        self.writer = writer
        # topic filter -> granted qos
        self.subscriptions: Dict[str, int] = {}
        self.next_msg_id = 1    # for outbound QoS1 to subscribers
        self.send_lock = asyncio.Lock()


class SessionManager:
    def __init__(self, auth):
        """
        auth: authentication strategy (AllowAll or AuthManager)
        """
        self.auth = auth
        # map client_id -> Session
        self.sessions: Dict[str, Session] = {}

    def authenticate(self,
                     username: str,
                     password: str) -> Optional[dict]:
        """
        Verify credentials; returns user record dict if OK, else None.
        """
        return self.auth.verify_user(username, password)

    def create_session(self,
                       client: ClientInfo,
                       user: dict,
                       writer: asyncio.StreamWriter) -> Session:
        """
        Register a new client session. An existing session with the same
        client id is taken over: its connection is closed.
        """
        previous = self.sessions.get(client.client_id)
        if previous is not None:
            previous.writer.close()
        sess = Session(client, user, writer)
        self.sessions[client.client_id] = sess
        return sess

    def next_id(self, sess: Session) -> int:
        pid = sess.next_msg_id
        sess.next_msg_id = pid+1 if pid<0xFFFF else 1
        return pid

    def can_subscribe(self, sess: Session, topic: str) -> bool:
        """
        ACL check before allowing a SUBSCRIBE.
        """
        return self.auth.can_subscribe(sess.user, topic)

    def can_publish(self, sess: Session, topic: str) -> bool:
        """
        ACL check before allowing a PUBLISH.
        """
        return self.auth.can_publish(sess.user, topic)

    def terminate_session(self, sess: Session) -> None:
        """
        Called on DISCONNECT. Leaves a newer session with the same id alone.
        """
        if self.sessions.get(sess.client.client_id) is sess:
            del self.sessions[sess.client.client_id]
