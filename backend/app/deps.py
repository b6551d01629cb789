from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "inventory_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.user_id, u.email, s.expires_at, s.is_active, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (token,),
            )
            row = cur.fetchone()
    now = datetime.now(timezone.utc)
    if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
        raise HTTPException(status_code=401, detail="invalid token")
    return {"user_id": row["user_id"], "email": row["email"]}


def get_current_user(session=Depends(get_session)):
    # The engine records user_id as the actor on every movement it makes for this request.
    return {"user_id": session["user_id"], "email": session["email"]}


def require_permission(code: str):
    def _dep(user=Depends(get_current_user)):
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM user_permissions
                    WHERE user_id = %s AND permission_code = %s
                    LIMIT 1
                    """,
                    (user["user_id"], code),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep
