import hmac
import os

from fastapi import HTTPException, Security
from fastapi.security.api_key import APIKeyHeader

# An empty API_KEY turns the check off, which is how most local setups run.
API_KEY = os.getenv("API_KEY", "dev-key")
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_operator(api_key: str = Security(api_key_header)):
    if not API_KEY:
        return True
    if api_key is None:
        raise HTTPException(status_code=401, detail="Missing API key")
    if not hmac.compare_digest(api_key, API_KEY):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return True
