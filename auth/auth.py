# mqtt_test_server/auth/auth.py

import json
from typing import Dict, List, Optional

import bcrypt

from broker.topics import match_topic

DEFAULT_ACL = ["#"]


class AuthFileError(Exception):
    """The users file is missing, unreadable or malformed."""


class AllowAll:
    """Strategy used when no users file is configured."""

    def verify_user(self, username: str, password: str) -> Optional[dict]:
        return {"username": username}

    def can_subscribe(self, user: dict, topic_filter: str) -> bool:
        return True

    def can_publish(self, user: dict, topic: str) -> bool:
        return True


class AuthManager:
    def __init__(self, users: Dict[str, dict]):
        """
        users: username -> {"password": bcrypt hash, "publish": [...], "subscribe": [...]}
        """
        self.users = users

    @classmethod
    def from_file(cls, path: str) -> "AuthManager":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as exc:
            raise AuthFileError(f"users file {path}: {exc.strerror or exc}") from exc
        except ValueError as exc:
            raise AuthFileError(f"users file {path}: invalid JSON ({exc})") from exc
        return cls(validate_users(data, path))

    def verify_user(self, username: str, password: str) -> Optional[dict]:
        """
        Return a user dict if credentials match, else None.
        """
        record = self.users.get(username)
        if record is None:
            return None

        stored_hash = record["password"].encode()
        try:
            ok = bcrypt.checkpw(password.encode(), stored_hash)
        except ValueError:
            # not a bcrypt hash
            return None
        if not ok:
            return None
        return {
            "username":  username,
            "publish":   record["publish"],
            "subscribe": record["subscribe"],
        }

    def can_subscribe(self, user: dict, topic_filter: str) -> bool:
        return any(match_topic(acl, topic_filter) for acl in user.get("subscribe", ()))

    def can_publish(self, user: dict, topic: str) -> bool:
        return any(match_topic(acl, topic) for acl in user.get("publish", ()))


def validate_users(data, path: str = "<users>") -> Dict[str, dict]:
    if not isinstance(data, dict):
        raise AuthFileError(f"users file {path}: top level must be an object")
    users = {}
    for username, entry in data.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("password"), str):
            raise AuthFileError(f"users file {path}: user {username!r} needs a password string")
        users[username] = {
            "password":  entry["password"],
            "publish":   _acl(entry, "publish", username, path),
            "subscribe": _acl(entry, "subscribe", username, path),
        }
    return users


def _acl(entry: dict, key: str, username: str, path: str) -> List[str]:
    value = entry.get(key, DEFAULT_ACL)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise AuthFileError(f"users file {path}: {key!r} of {username!r} must be a list of topics")
    return list(value)


def load_auth_strategy(path: str):
    if not path:
        return AllowAll()
    return AuthManager.from_file(path)
