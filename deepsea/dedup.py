from typing import List


def is_cjk_char(ch: str) -> bool:
    if not isinstance(ch, str) or len(ch) != 1:
        return False
    code = ord(ch)
    return (
        0x4E00 <= code <= 0x9FFF  # CJK Unified Ideographs
        or 0x3400 <= code <= 0x4DBF  # CJK Extension A
        or 0x3040 <= code <= 0x309F  # Hiragana
        or 0x30A0 <= code <= 0x30FF  # Katakana
        or 0xAC00 <= code <= 0xD7AF  # Hangul
    )


def contains_cjk(text: str) -> bool:
    return any(is_cjk_char(ch) for ch in str(text or ""))


def normalize_query_intent(query: str) -> str:
    tokens: List[str] = []
    buf: List[str] = []
    mode = ""  # "latin", "cjk", ""

    def flush() -> None:
        nonlocal buf, mode
        if buf:
            tok = "".join(buf).strip()
            if tok:
                tokens.append(tok)
        buf = []
        mode = ""

    for ch in str(query or ""):
        if is_cjk_char(ch):
            if mode != "cjk":
                flush()
                mode = "cjk"
            buf.append(ch)
        elif ch.isalnum():
            if mode != "latin":
                flush()
                mode = "latin"
            buf.append(ch.lower())
        else:
            flush()
    flush()
    return " ".join(tokens)


def tokenize(text: str) -> set[str]:
    out: set[str] = set()
    for tok in normalize_query_intent(text).split():
        if contains_cjk(tok):
            out.add(tok)
            cjk_chars = [ch for ch in tok if is_cjk_char(ch)]
            if len(cjk_chars) >= 2:
                for i in range(len(cjk_chars) - 1):
                    out.add("".join(cjk_chars[i : i + 2]))
            continue
        if len(tok) > 1:
            out.add(tok)
    return out


def similarity(a: str, b: str) -> float:
    ta = tokenize(a)
    tb = tokenize(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / float(len(ta | tb))


class QueryDeduplicator:
    """
    Drops candidate queries that are near-duplicates of history or of an
    earlier candidate in the same batch (token-set Jaccard >= threshold).
    """

    def __init__(self, threshold: float = 0.6) -> None:
        self.threshold = threshold

    async def dedup(self, new_queries: List[str], existing: List[str]) -> List[str]:
        kept: List[str] = []
        for query in new_queries:
            query = (query or "").strip()
            if not query:
                continue
            if any(self._is_duplicate(query, prior) for prior in existing):
                continue
            if any(self._is_duplicate(query, prior) for prior in kept):
                continue
            kept.append(query)
        return kept

    def _is_duplicate(self, a: str, b: str) -> bool:
        if a.strip().lower() == b.strip().lower():
            return True
        return similarity(a, b) >= self.threshold
