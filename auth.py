from typing import Any, Dict

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database

import factory
from database import get_db, to_object_id
from errors import Forbidden, Unauthorized
from resources import USER
from security import changed_password_after, decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/users/login", auto_error=False)


def get_current_user(token: str = Depends(oauth2_scheme), database: Database = Depends(get_db)) -> Dict[str, Any]:
    """Resolve the bearer token to a stored, active user (hidden fields included)."""
    if not token:
        raise Unauthorized("You are not logged in! Please log in to get access.")
    payload = decode_access_token(token)
    user_id = to_object_id(payload["sub"])
    user = factory.find_one_raw(database, USER, {"_id": user_id}) if user_id else None
    if user is None:
        raise Unauthorized("The user belonging to this token does no longer exist.")
    if changed_password_after(user, int(payload.get("iat", 0))):
        raise Unauthorized("User recently changed password! Please log in again.")
    return user


def require_role(*roles: str):
    def role_dep(current_user=Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise Forbidden("You do not have permission to perform this action")
        return current_user
    return role_dep
