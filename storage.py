# storage.py
from typing import Dict, Iterable, List, Set

import config
from network import TableRow
from utils import between, hash_key


class KeyValueStore:
    """
    Local bindings of one node: key -> set of values.
    Ranges are identifier arcs; a key belongs to the arc its hash falls in.
    """

    def __init__(self, m: int = config.M):
        self.m = m
        self._store: Dict[str, Set[str]] = {}

    def get(self, key: str) -> List[str]:
        return sorted(self._store.get(key, ()))

    def add(self, key: str, val: str) -> None:
        self._store.setdefault(key, set()).add(val)

    def delete(self, key: str, val: str) -> None:
        vals = self._store.get(key)
        if vals is None:
            return
        vals.discard(val)
        if not vals:
            del self._store[key]

    def _in_range(self, key: str, start: int, end: int) -> bool:
        return between(start, hash_key(key, self.m), end, m=self.m, inclusive_end=True)

    def keys_in_range(self, start: int, end: int) -> List[TableRow]:
        return [TableRow(k, sorted(v)) for k, v in self._store.items() if self._in_range(k, start, end)]

    def take_range(self, start: int, end: int) -> List[TableRow]:
        """
        Remove and return rows whose key hash is in (start, end].
        """
        taken: List[TableRow] = []
        for k in list(self._store.keys()):
            if self._in_range(k, start, end):
                taken.append(TableRow(k, sorted(self._store.pop(k))))
        return taken

    def ingest(self, rows: Iterable[TableRow]) -> None:
        for row in rows:
            for val in row.vals:
                self.add(row.key, val)

    def rows(self) -> List[TableRow]:
        return [TableRow(k, sorted(v)) for k, v in self._store.items()]

    def pop_all(self) -> List[TableRow]:
        data = self.rows()
        self._store.clear()
        return data

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store
