"""Arabic-aware normalization and asterisk-marked token extraction."""

import re
from typing import List

MARKED_PATTERN = re.compile(r"\*([^*]+)\*")

_LETTER_CLASSES = (
    (re.compile("[أإآا]"), "ا"),
    (re.compile("[ىي]"), "ي"),
    (re.compile("[ةه]"), "ه"),
    (re.compile("[ؤو]"), "و"),
    (re.compile("[ئء]"), "ء"),
    (re.compile("[كک]"), "ك"),
)

_EMOJI_RANGES = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "]"
)

# Arabic blocks and presentation forms, ASCII letters, whitespace, separators.
_DISALLOWED = re.compile(
    "[^"
    "\u0600-\u06FF\u0750-\u077F\u08A0-\u08FF\uFB50-\uFDFF\uFE70-\uFEFF"
    "a-zA-Z\\s/\\-|\u060C,\u061B;:"
    "]"
)

SEPARATORS = re.compile("[\\s/\\-|\u060C,\u061B;:]+")

MATCHUP_PATTERN = re.compile(
    r"تورنير|مسابقة|بطولة|مباراة|tournament|match|ضد|vs|versus|/|\|",
    re.IGNORECASE,
)


def normalize(text: str) -> str:
    """Collapse Arabic letter variants to one form and lower-case the rest."""

    for pattern, replacement in _LETTER_CLASSES:
        text = pattern.sub(replacement, text)
    return text.lower()


def extract_marked_content(text: str) -> str:
    spans = MARKED_PATTERN.findall(text or "")
    if not spans:
        return ""
    content = " ".join(spans)
    content = _EMOJI_RANGES.sub("", content)
    content = _DISALLOWED.sub("", content)
    return re.sub(r"\s+", " ", content).strip()


def extract_tokens(text: str) -> List[str]:
    """Return the words found between ``*`` markers, in order.

    Text outside marker pairs is ignored entirely; a message without a
    complete pair yields an empty list and is not a detection candidate.
    """

    content = extract_marked_content(text)
    if not content:
        return []
    return [word for word in SEPARATORS.split(content) if word]


def is_matchup(text: str) -> bool:
    """Flag tournament / versus style messages."""

    content = extract_marked_content(text)
    if not content:
        return False
    if MATCHUP_PATTERN.search(content):
        return True
    return len([word for word in SEPARATORS.split(content) if word]) >= 2
