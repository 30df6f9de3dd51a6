"""
Heuristic token estimation.

Counts are approximations derived from character length. They are stable and
cheap, which is what chunk sizing needs; exact tokenizer fidelity is not a goal.
"""
import math
import re

TOKENS_PER_CHAR = 0.25

_WORD_RE = re.compile(r"[A-Za-z'-]+")
_STRUCTURED_RE = re.compile(r"\$\d+|\d+%|SKU:|Category:|Tag:")
_MARKUP_RE = re.compile(r"<[^>]+>")


def count_words(text: str) -> int:
    """Count alphabetic words."""
    return len(_WORD_RE.findall(text))


def estimate_token_count(text: str, tokens_per_char: float = TOKENS_PER_CHAR) -> int:
    """
    Estimate the token count of ``text``.

    Base estimate is ``ceil(len(text) * tokens_per_char)``, then:
    - 10% less for repetitive text (unique-word ratio below 0.5)
    - 15% more for price / SKU / category style content
    - 20% more when markup tags are present

    Non-empty text never estimates below 1.
    """
    if not text:
        return 0

    base_tokens = math.ceil(len(text) * tokens_per_char)
    adjustment = 0

    words = _WORD_RE.findall(text)
    if words:
        unique_ratio = len({word.lower() for word in words}) / len(words)
        if unique_ratio < 0.5:
            adjustment -= math.ceil(base_tokens * 0.1)

    if _STRUCTURED_RE.search(text):
        adjustment += math.ceil(base_tokens * 0.15)

    if _MARKUP_RE.search(text):
        adjustment += math.ceil(base_tokens * 0.2)

    return max(1, base_tokens + adjustment)
