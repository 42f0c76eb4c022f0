"""JSON values in Redis, with concurrent misses collapsed onto one build."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

from delguur.infra.redis import RedisProxy, redis_client

CacheBuilder = Callable[[], Awaitable[Any]]

_MISS = object()


class JsonCache:
	"""Values live under `<namespace><name>@<generation>`.

	`invalidate` bumps the generation, so a build that started before it
	writes a key nobody reads any more and cannot resurrect the old value.
	"""

	def __init__(self, redis: Any | None = None, *, namespace: str = "delguur:cache:") -> None:
		self.redis: RedisProxy | Any = redis or redis_client
		self.namespace = namespace
		self._inflight: dict[str, asyncio.Future[Any]] = {}

	async def _generation(self, name: str) -> str:
		raw = await self.redis.get(f"{self.namespace}{name}:gen")
		if isinstance(raw, bytes):
			raw = raw.decode("utf-8")
		return str(raw or 0)

	def _key(self, name: str, generation: str) -> str:
		return f"{self.namespace}{name}@{generation}"

	async def _read(self, key: str) -> Any:
		raw = await self.redis.get(key)
		if raw is None:
			return _MISS
		if isinstance(raw, bytes):
			raw = raw.decode("utf-8")
		try:
			envelope = json.loads(raw)
		except json.JSONDecodeError:
			return _MISS
		# Values are wrapped so a cached null is still a hit.
		if not isinstance(envelope, dict) or "v" not in envelope:
			return _MISS
		return envelope["v"]

	async def _write(self, key: str, value: Any, ttl: int) -> None:
		await self.redis.set(key, json.dumps({"v": value}), ex=max(1, int(ttl)))

	async def get(self, name: str) -> Any | None:
		value = await self._read(self._key(name, await self._generation(name)))
		return None if value is _MISS else value

	async def set(self, name: str, value: Any, *, ttl: int) -> None:
		await self._write(self._key(name, await self._generation(name)), value, ttl)

	async def invalidate(self, name: str) -> None:
		await self.redis.incr(f"{self.namespace}{name}:gen")

	async def get_or_build(self, name: str, *, ttl: int, builder: CacheBuilder) -> Any:
		"""Return the cached value, or build it once for every waiter on the same generation."""
		key = self._key(name, await self._generation(name))
		value = await self._read(key)
		if value is not _MISS:
			return value
		pending = self._inflight.get(key)
		if pending is not None:
			return await asyncio.shield(pending)

		future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
		self._inflight[key] = future
		try:
			value = await builder()
			await self._write(key, value, ttl)
		except asyncio.CancelledError:
			future.cancel()
			raise
		except Exception as exc:
			future.set_exception(exc)
			# Waiters re-raise it; mark retrieved so an unawaited future does not warn.
			future.exception()
			raise
		else:
			future.set_result(value)
			return value
		finally:
			self._inflight.pop(key, None)
