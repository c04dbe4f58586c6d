import re
import unicodedata
from typing import Iterable


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form chat text for stable keyword matching.
    Inputs/Outputs: Input is a raw string; output is a casefolded string with
        punctuation replaced by spaces and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the tracker and the fallback replies.
    Failure Modes: Returns an empty string when input is falsy.
    Testing Notes: Bengali letters and combining marks must survive normalization
        ("হ্যাঁ" stays matchable) while "Hello!!" becomes "hello".
    """
    # Keep letters, digits and combining marks so Bengali words stay intact.
    if not text:
        return ""
    lowered = unicodedata.normalize("NFC", text).casefold().replace("’", "'")
    cleaned = "".join(
        ch if (unicodedata.category(ch)[0] in {"L", "N", "M"} or ch in "'-") else " "
        for ch in lowered
    )
    return re.sub(r"\s+", " ", cleaned).strip()


def contains_phrase(normalized: str, phrase: str) -> bool:
    """Match a phrase against normalized text on word boundaries.

    Boundaries use lookarounds on word characters, so "hi" does not fire inside
    "this" while Bengali phrases still match as plain substrings of words.
    """
    target = normalize_text(phrase)
    if not target or not normalized:
        return False
    if not target.isascii():
        return target in normalized
    pattern = r"(?<![\w])" + re.escape(target) + r"(?![\w])"
    return re.search(pattern, normalized) is not None


def message_has_any(normalized: str, phrases: Iterable[str]) -> bool:
    return any(contains_phrase(normalized, phrase) for phrase in phrases)


def cap_discount(requested: int, max_discount_percent: int) -> int:
    """Clamp a discount into [0, max_discount_percent]."""
    return max(0, min(int(requested or 0), int(max_discount_percent)))


def discounted_price(price: int, discount_percent: int) -> int:
    """Return round(price * (1 - discount_percent / 100)) with halves rounded up.

    Integer arithmetic keeps results exact, e.g. 4999 at 10% is 4499.
    """
    return (price * (100 - discount_percent) * 2 + 100) // 200


def format_price(amount: int, currency: str = "BDT") -> str:
    if currency == "BDT":
        return f"৳{amount:,}"
    return f"{currency} {amount:,}"


def mask_contact_value(value: object) -> str:
    """Mask phone-like values for logging, keeping only the last digits."""
    if value is None:
        return ""
    digits = re.findall(r"\d", str(value))
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])
