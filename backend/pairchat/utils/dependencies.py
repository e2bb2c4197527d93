from typing import Optional

from fastapi import Depends
from fastapi.requests import HTTPConnection

from pairchat.database.connection import mongo_db_dependency
from pairchat.exceptions import AuthenticationError, NotFound
from pairchat.realtime.hub import RealtimeHub
from pairchat.repositories.user_repository import UserRepository
from pairchat.utils.security import SESSION_COOKIE, decode_access_token


def extract_token(conn: HTTPConnection) -> Optional[str]:
    """Session cookie first, then ``Authorization: Bearer``."""
    token = conn.cookies.get(SESSION_COOKIE)
    if token:
        return token
    auth = conn.headers.get("authorization", "")
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def get_current_user(conn: HTTPConnection, db=Depends(mongo_db_dependency)) -> dict:
    token = extract_token(conn)
    if not token:
        raise AuthenticationError("Unauthorized - No Token Provided")
    payload = decode_access_token(token)
    user = await UserRepository(db).get_user_by_id(payload["sub"])
    if not user:
        raise NotFound("User not found")
    user.pop("hashed_password", None)
    return user


def get_hub(conn: HTTPConnection) -> RealtimeHub:
    return conn.app.state.hub
