from jose import JWTError, jwt

from kost.core.config import settings


# ─── JWT tokens ────────────────────────────────────────
# Tokens are minted by the auth provider; the console only verifies them.
def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.api_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
