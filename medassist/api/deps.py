from fastapi import Header, HTTPException, Request, status

from medassist.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def optional_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    user_id = (x_user_id or "").strip()
    return user_id or None


def require_user_id(x_user_id: str | None = Header(default=None)) -> str:
    user_id = optional_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header.",
        )
    return user_id
