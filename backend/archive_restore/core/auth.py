import hmac

from fastapi import Header, HTTPException, status

from archive_restore.core.config import get_settings


def require_restore_token(x_restore_token: str | None = Header(default=None)) -> None:
    expected = get_settings().restore_api_token
    if not expected:
        return
    if not x_restore_token or not hmac.compare_digest(x_restore_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid restore token")
