# mqtt_test_server/admin/cli.py

import argparse
import getpass
import json
import os
import sys

import bcrypt

from auth.auth import DEFAULT_ACL, AuthFileError, validate_users


def load_users(path):
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError as exc:
            raise AuthFileError(f"users file {path}: invalid JSON ({exc})") from exc
    validate_users(data, path)
    return data


def save_users(path, users):
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(users, f, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)


def create_user(path, username, password, publish=None, subscribe=None):
    users = load_users(path)
    pw_hash = bcrypt.hashpw(password.encode(), bcrypt.gensalt())
    users[username] = {
        "password":  pw_hash.decode(),
        "publish":   list(publish or DEFAULT_ACL),
        "subscribe": list(subscribe or DEFAULT_ACL),
    }
    save_users(path, users)
    print(f"✅ User {username!r} saved to {path}.")


def remove_user(path, username):
    users = load_users(path)
    if users.pop(username, None) is None:
        print(f"❌ User {username!r} not found.")
        return False
    save_users(path, users)
    print(f"✅ User {username!r} removed.")
    return True


def list_users(path):
    users = load_users(path)
    if not users:
        print("No users defined.")
        return
    for name in sorted(users):
        entry = users[name]
        pub = ",".join(entry.get("publish", DEFAULT_ACL))
        sub = ",".join(entry.get("subscribe", DEFAULT_ACL))
        print(f"• {name}  publish=[{pub}]  subscribe=[{sub}]")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="mqtt-test-users",
                                     description="Manage the broker's users file")
    parser.add_argument("-u", "--user-file", default="users.json",
                        help="Users and permissions file (.json)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("add-user", help="Create or replace a user")
    p.add_argument("username")
    p.add_argument("--publish", action="append",
                   help="Topic filter the user may publish to (repeatable, default '#')")
    p.add_argument("--subscribe", action="append",
                   help="Topic filter the user may subscribe to (repeatable, default '#')")

    p = sub.add_parser("remove-user", help="Delete a user")
    p.add_argument("username")

    sub.add_parser("list-users", help="List all users")

    args = parser.parse_args(argv)
    try:
        if args.cmd == "add-user":
            pwd = getpass.getpass(f"Password for {args.username}: ")
            create_user(args.user_file, args.username, pwd, args.publish, args.subscribe)
        elif args.cmd == "remove-user":
            if not remove_user(args.user_file, args.username):
                return 1
        elif args.cmd == "list-users":
            list_users(args.user_file)
    except AuthFileError as exc:
        print(f"❌ {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
