from __future__ import annotations

import functools
import re
from typing import Iterable, List, Pattern, Sequence


def _translate_segment(seg: str) -> str:
    out = []
    i = 0
    n = len(seg)
    while i < n:
        c = seg[i]
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and seg[j] in "!^":
                j += 1
            if j < n and seg[j] == "]":
                j += 1
            while j < n and seg[j] != "]":
                j += 1
            if j >= n:
                out.append(re.escape(c))
            else:
                body = seg[i + 1 : j]
                if body[:1] in ("!", "^"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = j
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@functools.lru_cache(maxsize=256)
def compile_glob(pattern: str) -> Pattern[str]:
    """Compile a slash-separated glob where ``**`` spans whole path segments.

    ``**`` may match zero segments, so ``a/**`` matches ``a`` itself and
    ``**/b`` matches a top-level ``b``.
    """
    parts = pattern.split("/")
    regex = ""
    need_sep = False
    last = len(parts) - 1
    for idx, part in enumerate(parts):
        if part == "**":
            if idx == last:
                regex += "(?:/.*)?" if need_sep else ".*"
            elif need_sep:
                regex += "/(?:.*/)?"
            else:
                regex += "(?:.*/)?"
            need_sep = False
            continue
        if need_sep:
            regex += "/"
        regex += _translate_segment(part)
        need_sep = True
    return re.compile(r"\A" + regex + r"\Z", re.DOTALL)


def glob_match(pattern: str, path: str) -> bool:
    return compile_glob(pattern).match(path) is not None


def _to_slash(p: str) -> str:
    return p.replace("\\", "/")


class PatternMatcher:
    """Decides whether a relative path is excluded.

    - ``dir/`` excludes that directory (at any depth) and everything below it
    - patterns containing ``**`` are matched as-is
    - single-segment globs (``*.log``) match at any depth
    - multi-segment globs without ``**`` match only paths of the same depth
    - anything else must equal the path exactly
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns: List[str] = [_to_slash(p) for p in patterns if p]

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def should_exclude(self, path: str) -> bool:
        path = _to_slash(path).strip("/")
        if not path:
            return False
        return any(self._matches(path, p) for p in self.patterns)

    def _matches(self, path: str, pattern: str) -> bool:
        if pattern.endswith("/"):
            stem = pattern.rstrip("/")
            return glob_match(stem + "/**", path) or glob_match("**/" + stem + "/**", path)
        if "*" in pattern or "?" in pattern or "[" in pattern:
            if "**" in pattern:
                return glob_match(pattern, path)
            if "/" not in pattern:
                return glob_match(pattern, path) or glob_match("**/" + pattern, path)
            if path.count("/") == pattern.count("/"):
                return glob_match(pattern, path)
            return False
        return path == pattern


def should_exclude(path: str, patterns: Sequence[str]) -> bool:
    return PatternMatcher(patterns).should_exclude(path)
