from __future__ import annotations

from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError


class FakeRedis:
    """
    In-memory stand-in for redis.asyncio.Redis (decode_responses=True), covering
    only the commands the queue uses.
    """

    def __init__(self, *, down: bool = False) -> None:
        self.kv: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.down = down
        self.closed = False
        self.calls: list[str] = []

    def _check(self, cmd: str) -> None:
        self.calls.append(cmd)
        if self.down:
            raise RedisConnectionError("Error 111 connecting to fake:6379. Connection refused.")

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def set(self, key: str, value: Any) -> bool:
        self._check("set")
        self.kv[key] = str(value)
        return True

    async def get(self, key: str) -> str | None:
        self._check("get")
        return self.kv.get(key)

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        n = 0
        for k in keys:
            for store in (self.kv, self.lists, self.zsets):
                if k in store:
                    del store[k]
                    n += 1
        return n

    async def lpush(self, key: str, *values: Any) -> int:
        self._check("lpush")
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, str(v))
        return len(lst)

    async def lmove(self, src: str, dst: str, wherefrom: str = "LEFT", whereto: str = "RIGHT") -> str | None:
        self._check("lmove")
        lst = self.lists.get(src)
        if not lst:
            return None
        v = lst.pop(0) if wherefrom.upper() == "LEFT" else lst.pop()
        out = self.lists.setdefault(dst, [])
        if whereto.upper() == "LEFT":
            out.insert(0, v)
        else:
            out.append(v)
        return v

    async def lrem(self, key: str, count: int, value: Any) -> int:
        self._check("lrem")
        lst = self.lists.get(key, [])
        v = str(value)
        before = len(lst)
        if count == 0:
            self.lists[key] = [x for x in lst if x != v]
            return before - len(self.lists[key])
        removed = 0
        while v in lst and removed < abs(count):
            lst.remove(v)
            removed += 1
        return removed

    async def llen(self, key: str) -> int:
        self._check("llen")
        return len(self.lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check("lrange")
        lst = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return list(lst[start:stop])

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check("zadd")
        z = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in z)
        for m, score in mapping.items():
            z[str(m)] = float(score)
        return added

    async def zrem(self, key: str, *members: Any) -> int:
        self._check("zrem")
        z = self.zsets.get(key, {})
        n = 0
        for m in members:
            if str(m) in z:
                del z[str(m)]
                n += 1
        return n

    async def zcard(self, key: str) -> int:
        self._check("zcard")
        return len(self.zsets.get(key, {}))

    async def zscore(self, key: str, member: Any) -> float | None:
        self._check("zscore")
        return self.zsets.get(key, {}).get(str(member))

    async def zrangebyscore(
        self,
        key: str,
        min: Any,
        max: Any,
        start: int | None = None,
        num: int | None = None,
    ) -> list[str]:
        self._check("zrangebyscore")
        lo = float("-inf") if min == "-inf" else float(min)
        hi = float("inf") if max == "+inf" else float(max)
        items = sorted(
            ((s, m) for m, s in self.zsets.get(key, {}).items() if lo <= s <= hi),
        )
        members = [m for _, m in items]
        if start is not None and num is not None:
            members = members[start : start + num]
        return members
