from typing import Optional

from fastapi import Header, HTTPException, status


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> dict:
    """
    Identity is resolved upstream (gateway / session layer) and forwarded as headers.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    role = (x_user_role or "client").lower()
    if role not in ("coach", "client"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user role")
    return {"_id": x_user_id, "role": role, "name": x_user_name or ""}
