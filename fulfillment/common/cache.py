"""
世代付きリードキャッシュ (Redis)

キーごとに世代番号を持ち、値は `{namespace}:{key}:v{世代}` に保存する。
invalidate() は世代番号をインクリメントするだけ。

  reader:  世代を読む → 値を読む → (miss) DB から計算 → 同じ世代で SET EX
  writer:  書き込み → invalidate() (= INCR)

ミューテーション前に読んだ世代で SET された古い値は、
INCR 後は誰にも読まれない。TTL は invalidate が失われた場合の上限。
"""

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_DB = "db"


class ReadCache:
    def __init__(
        self,
        redis: aioredis.Redis | None,
        namespace: str,
        ttl_seconds: int = 60,
    ) -> None:
        self.redis = redis
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds

    def _generation_key(self, key: str) -> str:
        return f"{self.namespace}:gen:{key}"

    def _value_key(self, key: str, generation: int) -> str:
        return f"{self.namespace}:{key}:v{generation}"

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
    ) -> tuple[Any, str]:
        """
        キャッシュ済みの値を返す。無ければ loader で計算して保存する。

        戻り値は (値, "cache" | "db")。loader が None を返した場合は保存しない。
        Redis 障害時は DB 読み込みにフォールバックする。
        """
        if self.redis is None:
            return await loader(), SOURCE_DB

        try:
            generation = int(await self.redis.get(self._generation_key(key)) or 0)
            cached = await self.redis.get(self._value_key(key, generation))
        except RedisError:
            logger.warning("Cache read failed for %s:%s, reading from store", self.namespace, key)
            return await loader(), SOURCE_DB

        if cached is not None:
            return json.loads(cached), SOURCE_CACHE

        value = await loader()
        if value is None:
            return None, SOURCE_DB

        try:
            await self.redis.set(
                self._value_key(key, generation),
                json.dumps(value, default=str),
                ex=self.ttl_seconds,
            )
        except RedisError:
            logger.warning("Cache fill failed for %s:%s", self.namespace, key)
        return value, SOURCE_DB

    async def invalidate(self, key: str) -> None:
        """
        世代を進める。

        失敗は UpstreamUnavailable として伝播する。トランザクション内で呼ばれた場合は
        ロールバックされ、ミューテーションは成功を返さない。
        """
        if self.redis is None:
            return
        try:
            await self.redis.incr(self._generation_key(key))
        except RedisError as e:
            raise UpstreamUnavailable(f"Cache invalidation failed: {e}") from e

    async def invalidate_after_commit(self, key: str) -> None:
        """
        コミット後の二度目の無効化。

        コミット済みの変更は取り消せないため、失敗してもログのみ。
        その場合の古さは TTL で上限が決まる。
        """
        try:
            await self.invalidate(key)
        except UpstreamUnavailable:
            logger.error(
                "Post-commit cache invalidation lost for %s:%s (bounded by %ss TTL)",
                self.namespace,
                key,
                self.ttl_seconds,
            )
