from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import sys
from uuid import uuid4

from satgate.domain.models import User
from satgate.persistence.db import SessionLocal
from satgate.services.audit import record_event
from satgate.services.sessions import encode_session_token, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a user if needed and print a session bearer token")
    parser.add_argument("--user-id", default=None, help="Existing user id; a new one is generated if omitted")
    parser.add_argument("--role", required=True, help="Role: athlete|coach|admin")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--ttl-hours", type=int, default=12, help="Session lifetime in hours")
    return parser


async def _create(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex

    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        if user is None:
            user = User(id=user_id, email=args.email, role=role, is_active=True)
            session.add(user)
        elif user.role != role:
            user.role = role
        await session.commit()

        await record_event(
            session=session,
            actor_type="system",
            actor_id="create_session_token",
            actor_role=role,
            event_type="auth.session.created",
            outcome="success",
            resource_type="user",
            resource_id=user_id,
            commit=True,
            best_effort=False,
        )

    token = encode_session_token(user_id=user_id, role=role, ttl=timedelta(hours=args.ttl_hours))
    print("Session created:")
    print(f"  user_id: {user_id}")
    print(f"  role: {role}")
    print("  bearer: ")
    print(f"    {token}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_session_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
