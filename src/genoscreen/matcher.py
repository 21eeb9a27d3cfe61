"""
Multi-pattern exact substring matching (Aho-Corasick).

The automaton is built once over every reference sequence and then scans a
patient sequence in a single pass. `find` returns the ids of the patterns
that occur at least once; ordering is left to the caller.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple


class SignatureMatcher:
    """Aho-Corasick automaton over (key, pattern) pairs."""

    def __init__(self, patterns: Iterable[Tuple[str, str]]):
        # node 0 is the root
        self._goto: List[Dict[str, int]] = [{}]
        self._fail: List[int] = [0]
        self._out: List[Set[str]] = [set()]
        self._size = 0
        for key, pattern in patterns:
            self._add(key, pattern)
        self._build_failure_links()

    def __len__(self) -> int:
        return self._size

    def _add(self, key: str, pattern: str) -> None:
        if not pattern:
            raise ValueError(f"Empty pattern for {key!r}")
        node = 0
        for ch in pattern:
            nxt = self._goto[node].get(ch)
            if nxt is None:
                nxt = len(self._goto)
                self._goto.append({})
                self._fail.append(0)
                self._out.append(set())
                self._goto[node][ch] = nxt
            node = nxt
        self._out[node].add(key)
        self._size += 1

    def _build_failure_links(self) -> None:
        queue: deque[int] = deque()
        for child in self._goto[0].values():
            self._fail[child] = 0
            queue.append(child)
        while queue:
            node = queue.popleft()
            for ch, child in self._goto[node].items():
                queue.append(child)
                fallback = self._fail[node]
                while fallback and ch not in self._goto[fallback]:
                    fallback = self._fail[fallback]
                target = self._goto[fallback].get(ch, 0)
                self._fail[child] = target if target != child else 0
                self._out[child] |= self._out[self._fail[child]]

    def find(self, text: str) -> Set[str]:
        """Return the keys of every pattern contained in `text`."""
        found: Set[str] = set()
        if not self._size:
            return found
        node = 0
        for ch in text:
            while node and ch not in self._goto[node]:
                node = self._fail[node]
            node = self._goto[node].get(ch, 0)
            if self._out[node]:
                found |= self._out[node]
                if len(found) == self._size:
                    break
        return found
