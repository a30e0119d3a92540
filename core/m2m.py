"""
core/m2m.py — 服务间（machine-to-machine）凭证

短时效 HS256 JWT，声明 iss / aud / iat / exp。
校验时 issuer 与 audience 必须与预期完全一致，任何不匹配都拒绝。
"""

import time
from typing import Dict, Optional

import jwt

from core.config import cfg
from core.errors import InvalidCredential
from core.events import E, log_event
from core.log import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 60
# 容忍两台机器之间的少量时钟偏差
CLOCK_LEEWAY_SECONDS = 5


def _secret() -> str:
    return str(cfg.get("payments.m2m.secret", "") or "")


def mint(issuer: str, audience: str, secret: str = "", ttl_seconds: int = 0, now: Optional[int] = None) -> str:
    signing_secret = secret or _secret()
    if not signing_secret:
        raise ValueError("payments.m2m.secret 未配置")
    if not issuer or not audience:
        raise ValueError("issuer/audience 不能为空")
    issued_at = int(now if now is not None else time.time())
    ttl = int(ttl_seconds or cfg.get_int("payments.m2m.ttl_seconds", DEFAULT_TTL_SECONDS))
    claims = {
        "iss": issuer,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    log_event(logger, E.M2M_MINT, level="debug", issuer=issuer, audience=audience, ttl=ttl)
    return jwt.encode(claims, signing_secret, algorithm=ALGORITHM)


def verify(token: str, expected_issuer: str, expected_audience: str, secret: str = "") -> Dict:
    signing_secret = secret or _secret()
    if not token or not signing_secret:
        raise InvalidCredential()
    try:
        claims = jwt.decode(
            token,
            signing_secret,
            algorithms=[ALGORITHM],
            audience=expected_audience,
            issuer=expected_issuer,
            leeway=CLOCK_LEEWAY_SECONDS,
            options={"require": ["iss", "aud", "iat", "exp"]},
        )
    except jwt.PyJWTError as e:
        log_event(
            logger,
            E.M2M_VERIFY_FAIL,
            level="warning",
            reason=type(e).__name__,
            expected_issuer=expected_issuer,
            expected_audience=expected_audience,
        )
        raise InvalidCredential(detail=str(e))
    # PyJWT 允许 aud 为列表，服务间凭证只接受单一受众
    if claims.get("aud") != expected_audience or claims.get("iss") != expected_issuer:
        log_event(logger, E.M2M_VERIFY_FAIL, level="warning", reason="pair_mismatch")
        raise InvalidCredential()
    return claims


def bearer_token(authorization: str) -> str:
    text = str(authorization or "").strip()
    if not text.lower().startswith("bearer "):
        return ""
    return text[7:].strip()

