"""
stepup/merchants.py

Merchants, their API keys, and their apps (rule sets + redirect allow-lists).

Keys look like `mk_<env>_<base64url(32 random bytes)>`. Only a bcrypt hash,
the prefix and the last four characters are stored; the raw key is returned
once, at creation or rotation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional, Tuple

import bcrypt

from .config import normalize_origin
from .errors import InvalidInput, NotFound, Unauthorized
from .models import AppPolicy, AppRule, Merchant, MerchantKey
from .storage import DocumentStore, b64url_token, new_id

logger = logging.getLogger(__name__)


def generate_merchant_key(env: str = "test") -> str:
    return f"mk_{env}_{b64url_token(32)}"


def hash_secret(raw: str, rounds: int) -> str:
    return bcrypt.hashpw(raw.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def check_secret(raw: str, hashed: str) -> bool:
    return bcrypt.checkpw(raw.encode("utf-8"), hashed.encode("ascii"))


def origin_of(url: str) -> Optional[str]:
    try:
        return normalize_origin(url)
    except ValueError:
        return None


def is_allowed_origin(url: str, allowed: Iterable[str]) -> bool:
    origin = origin_of(url)
    return origin is not None and origin in set(allowed)


def _normalize_origins(origins: Iterable[str]) -> List[str]:
    out: List[str] = []
    for o in origins:
        try:
            n = normalize_origin(o)
        except ValueError as e:
            raise InvalidInput(f"invalid origin {o!r}: {e}") from e
        if n not in out:
            out.append(n)
    return out


class MerchantDirectory:
    def __init__(
        self,
        store: DocumentStore,
        *,
        key_env: str = "test",
        hash_rounds: int = 12,
        default_allowed_origins: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.key_env = key_env
        self.hash_rounds = hash_rounds
        self.default_allowed_origins = list(default_allowed_origins)
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    async def _new_key(self) -> Tuple[MerchantKey, str]:
        raw = generate_merchant_key(self.key_env)
        hashed = await asyncio.to_thread(hash_secret, raw, self.hash_rounds)
        key = MerchantKey(
            prefix=f"mk_{self.key_env}",
            last_four=raw[-4:],
            hash=hashed,
            created_at=self.now(),
        )
        return key, raw

    # -------------------------------------------------------------------------
    # Merchants
    # -------------------------------------------------------------------------
    async def provision(self, name: str = "", allowed_origins: Iterable[str] = ()) -> Tuple[Merchant, str]:
        key, raw = await self._new_key()
        merchant = Merchant(
            merchant_id=new_id("mch_", 8),
            name=name,
            key=key,
            allowed_origins=_normalize_origins(allowed_origins),
            created_at=self.now(),
        )
        await self.store.insert_merchant(merchant)
        logger.info("merchant provisioned merchant_id=%s", merchant.merchant_id)
        return merchant, raw

    async def rotate_key(self, merchant_id: str) -> Tuple[Merchant, str]:
        if await self.store.get_merchant(merchant_id) is None:
            raise NotFound("merchant not found")
        key, raw = await self._new_key()
        key.rotated_at = key.created_at
        merchant = await self.store.update_merchant(merchant_id, {"key": key.model_dump(mode="json")})
        logger.info("merchant key rotated merchant_id=%s", merchant_id)
        return merchant, raw

    async def set_allowed_origins(self, merchant_id: str, origins: Iterable[str]) -> Merchant:
        merchant = await self.store.update_merchant(merchant_id, {"allowed_origins": _normalize_origins(origins)})
        if merchant is None:
            raise NotFound("merchant not found")
        return merchant

    async def authenticate(self, merchant_id: str, raw_key: str) -> Merchant:
        if not merchant_id or not raw_key:
            raise Unauthorized("Unauthorized")
        merchant = await self.store.get_merchant(merchant_id)
        if merchant is None:
            raise Unauthorized("Unauthorized")
        ok = await asyncio.to_thread(check_secret, raw_key, merchant.key.hash)
        if not ok:
            logger.info("merchant key rejected merchant_id=%s", merchant_id)
            raise Unauthorized("Unauthorized")
        return merchant

    # -------------------------------------------------------------------------
    # Apps
    # -------------------------------------------------------------------------
    async def create_app(
        self,
        merchant_id: str,
        name: str,
        rules: Iterable[AppRule],
        allowed_origins: Iterable[str] = (),
    ) -> AppPolicy:
        if await self.store.get_merchant(merchant_id) is None:
            raise NotFound("merchant not found")
        now = self.now()
        app = AppPolicy(
            app_id=new_id("app_", 8),
            merchant_id=merchant_id,
            name=name,
            rules=list(rules),
            allowed_origins=_normalize_origins(allowed_origins),
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_app(app)
        return app

    async def update_app(
        self,
        merchant_id: str,
        app_id: str,
        *,
        name: Optional[str] = None,
        rules: Optional[Iterable[AppRule]] = None,
        allowed_origins: Optional[Iterable[str]] = None,
    ) -> AppPolicy:
        await self.get_app(merchant_id, app_id)
        fields = {"updated_at": self.now()}
        if name is not None:
            fields["name"] = name
        if rules is not None:
            fields["rules"] = [r.model_dump(mode="json") for r in rules]
        if allowed_origins is not None:
            fields["allowed_origins"] = _normalize_origins(allowed_origins)
        return await self.store.update_app(app_id, fields)

    async def get_app(self, merchant_id: str, app_id: str) -> AppPolicy:
        app = await self.store.get_app(app_id)
        if app is None or app.merchant_id != merchant_id:
            raise NotFound("app not found")
        return app

    def allowed_origins(self, merchant: Merchant, app: Optional[AppPolicy] = None) -> List[str]:
        """Most specific non-empty allow-list wins: app, then merchant, then defaults."""
        if app is not None and app.allowed_origins:
            return list(app.allowed_origins)
        if merchant.allowed_origins:
            return list(merchant.allowed_origins)
        return list(self.default_allowed_origins)
